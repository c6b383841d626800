"""RepoManager — read-only queries against the source checkout.

All git operations use :func:`subprocess.run`; no GitPython dependency.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

# Paths the pipeline itself writes inside the checkout; they never make
# the tree "dirty" for tagging purposes.
_IGNORED_STATUS_PREFIXES = ("_build/", ".shipline/locks/")


class GitError(Exception):
    """Raised when a git subprocess returns a non-zero exit code."""


def _run_git(
    *args: str,
    cwd: str | Path | None = None,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    """Execute a git command via subprocess and return the result.

    Parameters
    ----------
    *args:
        Arguments passed after ``git``.
    cwd:
        Working directory for the command.
    check:
        If *True*, raise :class:`GitError` on non-zero exit.
    """
    cmd = ["git", *args]
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as exc:
        raise GitError("git executable not found") from exc
    if check and result.returncode != 0:
        raise GitError(
            f"git {' '.join(args)} failed (rc={result.returncode}): "
            f"{result.stderr.strip()}"
        )
    return result


class RepoManager:
    """Query the git checkout a release is built from.

    Parameters
    ----------
    path:
        Root directory of the repository.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).resolve()

    def is_repo(self) -> bool:
        """Return *True* if *self.path* is inside a git repository."""
        if not self.path.is_dir():
            return False
        result = _run_git(
            "rev-parse", "--is-inside-work-tree",
            cwd=self.path,
            check=False,
        )
        return result.returncode == 0 and result.stdout.strip() == "true"

    def head_commit(self) -> str:
        """Return the full hash of ``HEAD``."""
        result = _run_git("rev-parse", "HEAD", cwd=self.path)
        return result.stdout.strip()

    def short_commit(self) -> str:
        """Return the abbreviated hash of ``HEAD`` as git prints it."""
        result = _run_git("rev-parse", "--short", "HEAD", cwd=self.path)
        return result.stdout.strip()

    def status(self) -> str:
        """Return the output of ``git status --porcelain``."""
        result = _run_git("status", "--porcelain", cwd=self.path)
        return result.stdout

    def dirty_paths(self) -> list[str]:
        """Return paths with uncommitted changes, ignoring pipeline state."""
        paths: list[str] = []
        for line in self.status().splitlines():
            if len(line) < 4:
                continue
            path = line[3:].strip().strip('"')
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            if path.startswith(_IGNORED_STATUS_PREFIXES):
                continue
            paths.append(path)
        return paths

    def is_clean(self) -> bool:
        """Return *True* if the working tree has no uncommitted changes."""
        return not self.dirty_paths()
