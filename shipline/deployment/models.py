"""Deployment records and backup snapshots."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from shipline.release.models import ProvenanceRecord


class DeploymentRecord(BaseModel):
    """One ledger entry naming the release active in an environment.

    ``artifacts`` maps component name to the exact registry coordinate
    that was started.  ``kind`` is ``deploy`` or ``rollback``.
    """

    model_config = ConfigDict(frozen=True)

    id: int = 0
    environment: str
    version: str
    artifacts: dict[str, str] = Field(default_factory=dict)
    provenance: dict[str, ProvenanceRecord] = Field(default_factory=dict)
    deployed_at: datetime
    previous_version: str = ""
    migrations_ran: bool = False
    backup_id: str = ""
    kind: str = "deploy"
    entry_hash: str = ""
    prev_entry_hash: str = ""


class BackupSnapshot(BaseModel):
    """A point-in-time copy of the persistent store. Never modified."""

    model_config = ConfigDict(frozen=True)

    backup_id: str
    taken_at: datetime
    store_ref: str
    location: Path
    environment: str = ""
    label: str = ""
