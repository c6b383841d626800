"""BackupManager — pre-deploy snapshots of the persistent store."""

from __future__ import annotations

import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from shipline.deployment.models import BackupSnapshot
from shipline.errors import BackupFailure
from shipline.providers.base import ProviderError, StoreBackup

logger = logging.getLogger(__name__)

SNAPSHOT_META = "snapshot.json"
DATA_DIR = "data"


class BackupManager:
    """Create, list, restore and prune store snapshots.

    Each snapshot is a directory ``<backup_dir>/backup-<YYYYMMDD-HHMMSS>``
    holding the store dump under ``data/`` and its metadata in
    ``snapshot.json``.

    Parameters
    ----------
    store:
        Dump/restore primitives for the store.
    backup_dir:
        Where snapshots are kept.
    environment:
        Environment the store belongs to, recorded in each snapshot.
    clock:
        Returns the current UTC time; replaceable in tests.
    """

    def __init__(
        self,
        store: StoreBackup,
        backup_dir: str | Path,
        *,
        environment: str = "",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.backup_dir = Path(backup_dir)
        self.environment = environment
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def snapshot(self, label: str = "") -> BackupSnapshot:
        """Dump the store into a new snapshot.

        Raises
        ------
        BackupFailure
            If the dump fails.  Partial output is removed.
        """
        taken_at = self._clock()
        backup_id = self._free_id(f"backup-{taken_at.strftime('%Y%m%d-%H%M%S')}")
        location = self.backup_dir / backup_id

        try:
            location.mkdir(parents=True)
            store_ref = self.store.dump(location / DATA_DIR)
        except (ProviderError, OSError) as exc:
            shutil.rmtree(location, ignore_errors=True)
            raise BackupFailure("Store backup failed", detail=str(exc)) from exc

        snap = BackupSnapshot(
            backup_id=backup_id,
            taken_at=taken_at,
            store_ref=store_ref,
            location=location,
            environment=self.environment,
            label=label,
        )
        (location / SNAPSHOT_META).write_text(
            snap.model_dump_json(indent=2), encoding="utf-8",
        )
        logger.info("Backed up %s to %s", store_ref, location)
        return snap

    def list_snapshots(self) -> list[BackupSnapshot]:
        """Return all snapshots, oldest first."""
        snapshots: list[BackupSnapshot] = []
        if not self.backup_dir.is_dir():
            return snapshots

        for snap_dir in sorted(self.backup_dir.iterdir()):
            meta_path = snap_dir / SNAPSHOT_META
            if not meta_path.is_file():
                continue
            try:
                snapshots.append(
                    BackupSnapshot.model_validate(json.loads(meta_path.read_text(encoding="utf-8")))
                )
            except (json.JSONDecodeError, OSError, ValidationError):
                logger.warning("Skipping unreadable snapshot metadata %s", meta_path)

        return sorted(snapshots, key=lambda s: (s.taken_at, s.backup_id))

    def latest(self, environment: str | None = None) -> BackupSnapshot | None:
        """Newest snapshot, optionally only among those of *environment*."""
        snapshots = [
            s for s in self.list_snapshots()
            if environment is None or s.environment == environment
        ]
        return snapshots[-1] if snapshots else None

    def get(self, backup_id: str) -> BackupSnapshot | None:
        for snap in self.list_snapshots():
            if snap.backup_id == backup_id:
                return snap
        return None

    def restore(self, backup_id: str) -> BackupSnapshot:
        """Replace the store's contents with snapshot *backup_id*.

        The store's writers must already be stopped.

        Raises
        ------
        BackupFailure
            If the snapshot is missing or the restore fails.
        """
        snap = self.get(backup_id)
        if snap is None:
            raise BackupFailure("Snapshot not found", detail=backup_id)
        try:
            self.store.restore(snap.location / DATA_DIR)
        except (ProviderError, OSError) as exc:
            raise BackupFailure(f"Restore of {backup_id} failed", detail=str(exc)) from exc
        logger.info("Restored store from %s", backup_id)
        return snap

    def prune(self, keep: int) -> list[str]:
        """Delete all but the newest *keep* snapshots; returns removed ids.

        Only snapshots of this manager's environment are considered.
        """
        if keep < 1:
            raise ValueError("keep must be >= 1")
        snapshots = [s for s in self.list_snapshots() if s.environment == self.environment]
        removed: list[str] = []
        for snap in snapshots[:-keep]:
            shutil.rmtree(snap.location, ignore_errors=True)
            removed.append(snap.backup_id)
            logger.info("Pruned snapshot %s", snap.backup_id)
        return removed

    def _free_id(self, base: str) -> str:
        candidate = base
        n = 0
        while (self.backup_dir / candidate).exists():
            n += 1
            candidate = f"{base}-{n}"
        return candidate
