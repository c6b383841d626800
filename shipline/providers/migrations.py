"""Migration runner that shells out to the application's migrate command."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Sequence

from shipline.providers.base import MigrationRunner, ProviderError

logger = logging.getLogger(__name__)


class CommandMigrationRunner(MigrationRunner):
    """Apply migrations by running *command*.

    When *directory* is given and holds no files there is nothing to
    apply, and the command is never run.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        directory: str | Path | None = None,
        cwd: str | Path = ".",
    ) -> None:
        self.command = list(command)
        self.directory = Path(directory) if directory else None
        self.cwd = Path(cwd)

    def pending(self) -> bool:
        if not self.command:
            return False
        if self.directory is None:
            return True
        folder = self.directory if self.directory.is_absolute() else self.cwd / self.directory
        return folder.is_dir() and any(folder.iterdir())

    def apply(self) -> None:
        logger.info("Running migrations: %s", " ".join(self.command))
        try:
            result = subprocess.run(
                self.command, cwd=self.cwd, capture_output=True, text=True,
            )
        except FileNotFoundError as exc:
            raise ProviderError(f"{self.command[0]} not found", command=self.command) from exc
        if result.returncode != 0:
            raise ProviderError(
                f"Migrations failed (rc={result.returncode})",
                command=self.command,
                stderr=result.stderr,
            )
