"""Persistent-store backup providers."""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

from shipline.definition import StoreSpec
from shipline.providers.base import ProviderError, StoreBackup

logger = logging.getLogger(__name__)

DUMP_NAME = "store"


class DirectoryStoreBackup(StoreBackup):
    """Back up a store that lives in a local file or directory.

    The copy is always named ``store`` inside the dump directory, so a
    dump of one store can be restored into another (e.g. production data
    into the test store).

    Parameters
    ----------
    path:
        The store's data file or directory.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def dump(self, destination: Path) -> str:
        if not self.path.exists():
            raise ProviderError(f"Store path does not exist: {self.path}")
        destination.mkdir(parents=True, exist_ok=True)
        target = destination / DUMP_NAME
        if self.path.is_dir():
            shutil.copytree(self.path, target)
        else:
            shutil.copy2(self.path, target)
        logger.info("Dumped store %s -> %s", self.path, target)
        return str(self.path)

    def restore(self, source: Path) -> None:
        dumped = source / DUMP_NAME
        if not dumped.exists():
            raise ProviderError(f"No store dump in {source}")
        if self.path.is_dir():
            shutil.rmtree(self.path)
        elif self.path.exists():
            self.path.unlink()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if dumped.is_dir():
            shutil.copytree(dumped, self.path)
        else:
            shutil.copy2(dumped, self.path)
        logger.info("Restored store %s from %s", self.path, dumped)


class CommandStoreBackup(StoreBackup):
    """Back up a store through external dump/restore commands.

    Each command may contain a ``{path}`` placeholder that receives the
    backup directory, e.g. ``["arangodump", "--output-directory", "{path}"]``.
    """

    def __init__(
        self,
        dump_command: list[str],
        restore_command: list[str],
        *,
        store_ref: str = "",
    ) -> None:
        self.dump_command = dump_command
        self.restore_command = restore_command
        self.store_ref = store_ref or " ".join(dump_command[:1])

    def _run(self, template: list[str], path: Path) -> None:
        cmd = [part.replace("{path}", str(path)) for part in template]
        logger.debug("store command: %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError as exc:
            raise ProviderError(f"{cmd[0]} not found", command=cmd) from exc
        if result.returncode != 0:
            raise ProviderError(
                f"{cmd[0]} failed (rc={result.returncode})",
                command=cmd,
                stderr=result.stderr,
            )

    def dump(self, destination: Path) -> str:
        if not self.dump_command:
            raise ProviderError("No dump command configured")
        destination.mkdir(parents=True, exist_ok=True)
        self._run(self.dump_command, destination)
        return self.store_ref

    def restore(self, source: Path) -> None:
        if not self.restore_command:
            raise ProviderError("No restore command configured")
        self._run(self.restore_command, source)


def store_from_spec(spec: StoreSpec, *, for_tests: bool = False) -> StoreBackup | None:
    """Build the backup provider a :class:`StoreSpec` describes.

    With *for_tests*, a directory store points at ``test_path`` instead.
    Returns *None* when no store is configured.
    """
    if spec.kind == "none":
        return None
    if spec.kind == "command":
        return CommandStoreBackup(spec.dump_command, spec.restore_command, store_ref=spec.path)
    path = spec.test_path if for_tests else spec.path
    if not path:
        return None
    return DirectoryStoreBackup(path)
