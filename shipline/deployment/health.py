"""HealthVerifier — waits for every deployed component to report healthy."""

from __future__ import annotations

import logging
import time
from typing import Callable, Sequence

from pydantic import BaseModel, Field

from shipline.definition import ComponentSpec
from shipline.errors import HealthCheckFailure
from shipline.providers.base import HealthProbe, ProviderError

logger = logging.getLogger(__name__)


class CheckResult(BaseModel):
    """Last observation of a single component."""

    name: str = ""
    passed: bool = True
    message: str = ""


class HealthReport(BaseModel):
    """Aggregate health report."""

    status: str = "healthy"  # healthy, unhealthy
    checks: list[CheckResult] = Field(default_factory=list)
    polls: int = 0
    elapsed: float = 0.0

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"

    def failing(self) -> list[str]:
        return [c.name for c in self.checks if not c.passed]


class HealthVerifier:
    """Poll component liveness until all are healthy or max-wait elapses.

    Only observes; never changes what is running.

    Parameters
    ----------
    probe:
        Liveness signal per component.
    components:
        Every component that must be healthy.
    max_wait:
        Seconds to wait for an all-healthy observation.
    interval:
        Seconds between polls.
    clock, sleep:
        Monotonic clock and sleep function; replaceable in tests.
    """

    def __init__(
        self,
        probe: HealthProbe,
        components: Sequence[ComponentSpec],
        *,
        max_wait: float = 60.0,
        interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not components:
            raise ValueError("HealthVerifier needs at least one component")
        self.probe = probe
        self.components = list(components)
        self.max_wait = max_wait
        self.interval = interval
        self._clock = clock
        self._sleep = sleep

    def observe(self) -> list[CheckResult]:
        """Probe every component once."""
        checks: list[CheckResult] = []
        for spec in self.components:
            try:
                ok = self.probe.is_healthy(spec)
                message = "healthy" if ok else "not healthy"
            except ProviderError as exc:
                ok, message = False, str(exc)
            checks.append(CheckResult(name=spec.name, passed=ok, message=message))
        return checks

    def verify(self) -> HealthReport:
        """Poll until healthy or timed out and return the report."""
        start = self._clock()
        deadline = start + self.max_wait
        polls = 0

        while True:
            checks = self.observe()
            polls += 1
            now = self._clock()
            if all(c.passed for c in checks):
                logger.info("All %d component(s) healthy after %.1fs", len(checks), now - start)
                return HealthReport(status="healthy", checks=checks, polls=polls, elapsed=now - start)
            if now >= deadline:
                report = HealthReport(
                    status="unhealthy", checks=checks, polls=polls, elapsed=now - start,
                )
                logger.error(
                    "Unhealthy after %.1fs: %s", report.elapsed, ", ".join(report.failing()),
                )
                return report
            logger.debug("Waiting for: %s", ", ".join(c.name for c in checks if not c.passed))
            self._sleep(min(self.interval, deadline - now))

    def verify_or_raise(self) -> HealthReport:
        """Like :meth:`verify` but raise :class:`HealthCheckFailure` when unhealthy."""
        report = self.verify()
        if not report.healthy:
            raise HealthCheckFailure(
                f"Not healthy within {self.max_wait:g}s",
                detail=", ".join(report.failing()),
            )
        return report
