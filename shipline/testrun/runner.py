"""TestRunner — tiered, escalating-isolation test execution.

Tier 1 runs the whole suite at high parallelism.  If anything fails, the
failures are retried one test per invocation at lower parallelism, and a
final sequential tier re-runs what still fails plus the known-slow tests.
Only tests that need isolation pay the sequential cost.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from itertools import count
from pathlib import Path
from typing import Callable, Iterable, Sequence

from pydantic import BaseModel, Field

from shipline.errors import TestFailure
from shipline.providers.base import ProviderError, TestExecutor
from shipline.testrun.models import TestOutcome, TestResult, TestTier
from shipline.testrun.tiers import DEFAULT_PARALLELISM, tier_for, validate_schedule

logger = logging.getLogger(__name__)


class TierRun(BaseModel):
    """All outcomes collected for one tier."""

    tier: TestTier
    outcomes: list[TestOutcome] = Field(default_factory=list)

    @property
    def failures(self) -> list[str]:
        return sorted(o.test_id for o in self.outcomes if not o.passed)


class TestRunReport(BaseModel):
    """Outcome of a complete tiered run.

    ``final`` maps each test id to the last outcome recorded for it.
    """

    __test__ = False

    tiers: list[TierRun] = Field(default_factory=list)
    final: dict[str, TestOutcome] = Field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return bool(self.final) and all(o.passed for o in self.final.values())

    @property
    def failed_tests(self) -> list[str]:
        return sorted(t for t, o in self.final.items() if not o.passed)

    @property
    def recovered_tests(self) -> list[str]:
        """Tests that failed at some tier but passed in their final run."""
        failed_once = {
            o.test_id for run in self.tiers for o in run.outcomes if not o.passed
        }
        return sorted(t for t in failed_once if self.final[t].passed)

    def summary(self) -> dict:
        return {
            "passed": self.passed,
            "total": len(self.final),
            "failed": self.failed_tests,
            "recovered": self.recovered_tests,
            "tiers": [
                {
                    "level": run.tier.level,
                    "parallelism": run.tier.parallelism,
                    "ran": len(run.outcomes),
                    "failed": run.failures,
                }
                for run in self.tiers
            ],
        }

    def write(self, path: str | Path) -> Path:
        """Write the JSON summary to *path*."""
        out = Path(path)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(json.dumps(self.summary(), indent=2), encoding="utf-8")
        return out


class TestRunner:
    """Run a suite through the tier schedule.

    Parameters
    ----------
    executor:
        Runs tests and returns structured results.
    known_slow:
        Tests always re-run in the final sequential tier once escalation
        has started.
    schedule:
        Parallelism per tier, strictly decreasing and ending at 1.
    full_scope:
        Explicit Tier 1 test ids; *None* lets the executor run its whole
        suite.
    """

    __test__ = False

    def __init__(
        self,
        executor: TestExecutor,
        *,
        known_slow: Iterable[str] = (),
        schedule: Sequence[int] = DEFAULT_PARALLELISM,
        full_scope: Iterable[str] | None = None,
    ) -> None:
        self.executor = executor
        self.known_slow = tuple(known_slow)
        self.schedule = validate_schedule(schedule)
        self.full_scope = tuple(full_scope) if full_scope is not None else None

    def run(self) -> TestRunReport:
        """Run every tier that is needed and return the report.

        A tier starts only after every outcome of the previous tier has
        been collected.
        """
        report = TestRunReport()
        carried: list[str] = []

        for index in count():
            tier = tier_for(
                index,
                carried_failures=carried,
                full_scope=self.full_scope,
                known_slow=self.known_slow,
                schedule=self.schedule,
            )
            if tier is None:
                break
            if tier.isolated and not tier.scope:
                logger.info("Tier %d: nothing to run", tier.level)
                continue

            logger.info(
                "Tier %d: %s at parallelism %d",
                tier.level,
                "full suite" if tier.full_suite else f"{len(tier.scope)} test(s)",
                tier.parallelism,
            )
            outcomes = self._run_tier(tier)
            run = TierRun(tier=tier, outcomes=outcomes)
            report.tiers.append(run)
            for outcome in outcomes:
                report.final[outcome.test_id] = outcome

            carried = run.failures
            if carried:
                logger.warning("Tier %d failures: %s", tier.level, ", ".join(carried))
            else:
                logger.info("Tier %d: all %d passed", tier.level, len(outcomes))

            if index == 0 and not carried:
                break

        return report

    def run_or_raise(
        self, on_report: Callable[[TestRunReport], None] | None = None,
    ) -> TestRunReport:
        """Run and raise :class:`TestFailure` unless every test ultimately passed.

        *on_report* receives the finished report before it is checked, so
        a failed run can still be recorded.
        """
        report = self.run()
        if on_report is not None:
            on_report(report)
        if not report.final:
            raise TestFailure("Test suite reported no results")
        if not report.passed:
            raise TestFailure(
                "Tests failed at the final tier",
                detail=", ".join(report.failed_tests),
            )
        if report.recovered_tests:
            logger.info("Recovered on retry: %s", ", ".join(report.recovered_tests))
        return report

    def _run_tier(self, tier: TestTier) -> list[TestOutcome]:
        if not tier.isolated:
            ids = None if tier.full_suite else sorted(tier.scope)
            try:
                results = self.executor.run(ids, tier.parallelism)
            except ProviderError as exc:
                raise TestFailure(f"Tier {tier.level} could not run", detail=str(exc)) from exc
            return [TestOutcome.from_result(r, tier.level) for r in results]

        ordered = sorted(tier.scope)
        with ThreadPoolExecutor(max_workers=tier.parallelism) as pool:
            results = list(pool.map(self._run_single, ordered))
        return [TestOutcome.from_result(r, tier.level) for r in results]

    def _run_single(self, test_id: str) -> TestResult:
        try:
            results = self.executor.run([test_id], 1)
        except ProviderError as exc:
            return TestResult(test_id=test_id, passed=False, category="error", message=str(exc))
        for result in results:
            if result.test_id == test_id:
                return result
        return TestResult(
            test_id=test_id,
            passed=False,
            category="missing",
            message="test did not report a result",
        )
