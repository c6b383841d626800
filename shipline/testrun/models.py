"""Typed test records: tiers, per-run results, and outcomes."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class TestTier(BaseModel):
    """One escalation level of the test-retry strategy.

    ``full_suite`` tiers run everything the executor knows about in a
    single invocation; ``isolated`` tiers run each test in ``scope`` on
    its own, at most ``parallelism`` invocations at a time.
    """

    __test__ = False
    model_config = ConfigDict(frozen=True)

    level: int = Field(ge=1)
    parallelism: int = Field(ge=1)
    scope: frozenset[str] = frozenset()
    full_suite: bool = False
    isolated: bool = False


class TestResult(BaseModel):
    """What an executor reports for one test in one invocation."""

    __test__ = False
    model_config = ConfigDict(frozen=True)

    test_id: str
    passed: bool
    category: str = "functional"
    duration: float = 0.0
    message: str = ""


class TestOutcome(BaseModel):
    """A :class:`TestResult` recorded at a specific tier."""

    __test__ = False
    model_config = ConfigDict(frozen=True)

    test_id: str
    tier: int
    passed: bool
    category: str = "functional"
    duration: float = 0.0
    message: str = ""

    @classmethod
    def from_result(cls, result: TestResult, tier: int) -> TestOutcome:
        return cls(
            test_id=result.test_id,
            tier=tier,
            passed=result.passed,
            category=result.category,
            duration=result.duration,
            message=result.message,
        )
