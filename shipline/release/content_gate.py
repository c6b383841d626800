"""ContentGate — payload-level scan for known-stale content."""

from __future__ import annotations

import json
import logging
from typing import Iterable, Iterator

from pydantic import BaseModel, Field

from shipline.errors import ContentGateViolation

logger = logging.getLogger(__name__)


class GateFinding(BaseModel):
    """A single content-gate finding."""

    component: str
    marker: str
    file_path: str = ""
    kind: str = "denied"  # denied, missing


class GateReport(BaseModel):
    """Result of scanning one or more artifact payloads."""

    scanned_files: int = 0
    findings: list[GateFinding] = Field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.findings

    def merge(self, other: GateReport) -> GateReport:
        return GateReport(
            scanned_files=self.scanned_files + other.scanned_files,
            findings=[*self.findings, *other.findings],
        )

    def describe(self) -> str:
        parts = []
        for f in self.findings:
            if f.kind == "denied":
                parts.append(f"{f.component}: {f.marker!r} in {f.file_path}")
            else:
                parts.append(f"{f.component}: {f.marker!r} missing")
        return "; ".join(parts)

    def to_json(self) -> str:
        return json.dumps(self.model_dump(), indent=2)


class ContentGate:
    """Scan static payloads for literal markers.

    Any deny-listed marker is a hard failure no matter what provenance
    said.  Required markers must each occur somewhere in the payload.

    Parameters
    ----------
    deny_markers:
        Literal strings that must never ship.
    required_markers:
        Literal strings that must appear at least once.
    ignore_case:
        Match markers case-insensitively.
    extensions:
        Only scan files with these suffixes (all files when empty).
    components:
        Only gate these components (all when empty).
    """

    def __init__(
        self,
        deny_markers: Iterable[str] = (),
        required_markers: Iterable[str] = (),
        *,
        ignore_case: bool = False,
        extensions: Iterable[str] = (),
        components: Iterable[str] = (),
    ) -> None:
        self.deny_markers = [m for m in deny_markers if m]
        self.required_markers = [m for m in required_markers if m]
        self.ignore_case = ignore_case
        self.extensions = tuple(e if e.startswith(".") else f".{e}" for e in extensions)
        self.components = frozenset(components)

    def applies_to(self, component: str) -> bool:
        return not self.components or component in self.components

    def _wanted(self, path: str) -> bool:
        return not self.extensions or path.endswith(self.extensions)

    def _norm(self, text: str) -> str:
        return text.lower() if self.ignore_case else text

    def scan(self, component: str, payload: Iterator[tuple[str, bytes]]) -> GateReport:
        """Scan ``(path, content)`` pairs for one component's payload."""
        if not self.applies_to(component):
            return GateReport()

        deny = [(m, self._norm(m)) for m in self.deny_markers]
        missing = {m: self._norm(m) for m in self.required_markers}
        findings: list[GateFinding] = []
        scanned = 0

        for path, content in payload:
            if not self._wanted(path):
                continue
            scanned += 1
            text = self._norm(content.decode("utf-8", errors="ignore"))
            for marker, needle in deny:
                if needle in text:
                    findings.append(GateFinding(
                        component=component, marker=marker, file_path=path,
                    ))
            for marker in [m for m, needle in missing.items() if needle in text]:
                del missing[marker]

        for marker in missing:
            findings.append(GateFinding(component=component, marker=marker, kind="missing"))

        logger.debug("Content gate scanned %d file(s) of %s", scanned, component)
        return GateReport(scanned_files=scanned, findings=findings)

    def check(self, component: str, payload: Iterator[tuple[str, bytes]]) -> GateReport:
        """Scan and raise :class:`ContentGateViolation` on any finding."""
        report = self.scan(component, payload)
        if not report.passed:
            raise ContentGateViolation(
                f"Content gate rejected {component}", detail=report.describe(),
            )
        return report
