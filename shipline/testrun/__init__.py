"""Tiered test execution with escalating isolation."""

from shipline.testrun.models import TestOutcome, TestResult, TestTier
from shipline.testrun.runner import TestRunner, TestRunReport, TierRun
from shipline.testrun.tiers import DEFAULT_PARALLELISM, tier_for, validate_schedule

__all__ = [
    "DEFAULT_PARALLELISM",
    "TestOutcome",
    "TestResult",
    "TestRunReport",
    "TestRunner",
    "TestTier",
    "TierRun",
    "tier_for",
    "validate_schedule",
]
