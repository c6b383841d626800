"""Test executor that runs a command and reads its JUnit XML report."""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Sequence

from shipline.providers.base import ProviderError, TestExecutor
from shipline.testrun.models import TestResult

logger = logging.getLogger(__name__)

TESTS_PLACEHOLDER = "{tests}"


def _float_attr(value: str | None) -> float:
    try:
        return float(value or "0")
    except ValueError:
        return 0.0


def case_id(case: ET.Element) -> str:
    """Return ``<classname>::<name>`` for a ``<testcase>`` element."""
    name = case.attrib.get("name", "")
    classname = case.attrib.get("classname", "")
    return f"{classname}::{name}" if classname else name


def _category(case: ET.Element, default: str) -> str:
    for prop in case.iter("property"):
        if prop.attrib.get("name") == "category" and prop.attrib.get("value"):
            return prop.attrib["value"]
    return default


def parse_junit(xml_text: str) -> list[TestResult]:
    """Parse a JUnit XML document into per-test results.

    A ``<testcase>`` with a ``<failure>`` or ``<error>`` child failed;
    skipped cases count as passed.  A ``category`` property on the case
    overrides the default category.
    """
    root = ET.fromstring(xml_text)
    results: list[TestResult] = []
    for case in root.iter("testcase"):
        failure = case.find("failure")
        error = case.find("error")
        if failure is not None:
            passed, default, node = False, "functional", failure
        elif error is not None:
            passed, default, node = False, "error", error
        elif case.find("skipped") is not None:
            passed, default, node = True, "skipped", None
        else:
            passed, default, node = True, "functional", None
        message = ""
        if node is not None:
            message = node.attrib.get("message", "") or (node.text or "").strip()[:500]
        results.append(TestResult(
            test_id=case_id(case),
            passed=passed,
            category=_category(case, default),
            duration=_float_attr(case.attrib.get("time")),
            message=message,
        ))
    return results


class CommandTestExecutor(TestExecutor):
    """Run a test command template and collect results from JUnit XML.

    Every invocation gets its own report file so isolated tests can run
    concurrently.

    Parameters
    ----------
    command:
        Argument template; see :class:`shipline.definition.SuiteSpec`.
    report:
        Where the command writes its report when the template has no
        ``{report}`` placeholder.
    cwd:
        Working directory for the command.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        report: str | Path,
        cwd: str | Path = ".",
    ) -> None:
        if not command:
            raise ValueError("test command must not be empty")
        self.command = list(command)
        self.report = Path(report)
        self.cwd = Path(cwd)
        self.env: dict[str, str] = {}

    def prepare(self, env: dict[str, str]) -> None:
        self.env.update(env)

    def _argv(self, test_ids: Sequence[str] | None, parallelism: int, report: Path) -> list[str]:
        argv: list[str] = []
        for part in self.command:
            if part == TESTS_PLACEHOLDER:
                argv.extend(test_ids or [])
                continue
            argv.append(
                part.replace("{parallelism}", str(parallelism)).replace("{report}", str(report))
            )
        return argv

    def run(self, test_ids: Sequence[str] | None, parallelism: int) -> list[TestResult]:
        uses_placeholder = any("{report}" in part for part in self.command)
        if uses_placeholder:
            handle, name = tempfile.mkstemp(prefix="shipline-junit-", suffix=".xml")
            os.close(handle)
            report = Path(name)
            report.unlink()
        else:
            report = self.report if self.report.is_absolute() else self.cwd / self.report
            report.unlink(missing_ok=True)

        argv = self._argv(test_ids, parallelism, report)
        logger.debug("test command: %s", " ".join(argv))
        try:
            proc = subprocess.run(
                argv,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                env={**os.environ, **self.env},
            )
        except FileNotFoundError as exc:
            raise ProviderError(f"{argv[0]} not found", command=argv) from exc

        try:
            if not report.is_file():
                raise ProviderError(
                    f"Test command produced no report (rc={proc.returncode})",
                    command=argv,
                    stderr=proc.stderr[-2000:],
                )
            try:
                results = parse_junit(report.read_text(encoding="utf-8"))
            except ET.ParseError as exc:
                raise ProviderError(f"Unreadable test report {report}: {exc}", command=argv) from exc
        finally:
            if uses_placeholder:
                report.unlink(missing_ok=True)

        if test_ids is not None:
            wanted = set(test_ids)
            results = [r for r in results if r.test_id in wanted]
            seen = {r.test_id for r in results}
            for missing in sorted(wanted - seen):
                results.append(TestResult(
                    test_id=missing,
                    passed=False,
                    category="missing",
                    message="test did not report a result",
                ))
        elif proc.returncode != 0 and all(r.passed for r in results):
            # Non-zero exit without a failing case means the harness itself broke.
            raise ProviderError(
                f"Test command failed (rc={proc.returncode}) without failing tests",
                command=argv,
                stderr=proc.stderr[-2000:],
            )
        return results
