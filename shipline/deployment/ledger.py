"""DeploymentLedger — append-only, hash-chained deployment history in SQLite."""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path

from shipline.deployment.models import DeploymentRecord
from shipline.release.hasher import Hasher

logger = logging.getLogger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS deployments (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    environment TEXT    NOT NULL,
    version     TEXT    NOT NULL,
    kind        TEXT    NOT NULL,
    deployed_at TEXT    NOT NULL,
    payload     TEXT    NOT NULL,
    entry_hash  TEXT    NOT NULL,
    prev_entry_hash TEXT NOT NULL DEFAULT ''
);
"""

_COLUMNS = "id, payload, entry_hash, prev_entry_hash"
_HASHED_EXCLUDE = {"id", "entry_hash", "prev_entry_hash"}


def _payload(record: DeploymentRecord) -> str:
    return json.dumps(
        record.model_dump(mode="json", exclude=_HASHED_EXCLUDE), sort_keys=True,
    )


class DeploymentLedger:
    """Every deployment and rollback, oldest first.

    The active release of an environment is its newest record.  Records
    are never updated or deleted; a rollback appends a new record.

    Parameters
    ----------
    db_path:
        Path to the SQLite file.  Defaults to ``':memory:'``.
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._db_path)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def append(self, record: DeploymentRecord) -> DeploymentRecord:
        """Append *record* and return it with ``id`` and hashes filled in."""
        payload = _payload(record)
        prev = self._last_hash()
        entry_hash = Hasher.hash_bytes(f"{payload}{prev}".encode("utf-8"))

        cur = self._conn.execute(
            "INSERT INTO deployments "
            "(environment, version, kind, deployed_at, payload, entry_hash, prev_entry_hash) "
            "VALUES (?,?,?,?,?,?,?)",
            (
                record.environment,
                record.version,
                record.kind,
                record.deployed_at.isoformat(),
                payload,
                entry_hash,
                prev,
            ),
        )
        self._conn.commit()
        logger.info(
            "Ledger: %s %s active in %s", record.kind, record.version, record.environment,
        )
        return record.model_copy(update={
            "id": cur.lastrowid or 0,
            "entry_hash": entry_hash,
            "prev_entry_hash": prev,
        })

    def history(self, environment: str | None = None) -> list[DeploymentRecord]:
        """All records, oldest first, optionally for one environment."""
        if environment is None:
            rows = self._conn.execute(
                f"SELECT {_COLUMNS} FROM deployments ORDER BY id"
            ).fetchall()
        else:
            rows = self._conn.execute(
                f"SELECT {_COLUMNS} FROM deployments WHERE environment = ? ORDER BY id",
                (environment,),
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def active(self, environment: str) -> DeploymentRecord | None:
        """The newest record for *environment*, or *None*."""
        row = self._conn.execute(
            f"SELECT {_COLUMNS} FROM deployments WHERE environment = ? "
            "ORDER BY id DESC LIMIT 1",
            (environment,),
        ).fetchone()
        return self._row_to_record(row) if row else None

    def superseded(self, environment: str) -> DeploymentRecord | None:
        """The newest record whose release the active one replaced.

        Follows ``previous_version`` back from the active record.  A
        rollback record, or a redeploy of the same version, stands for the
        record it re-activated, so the release it replaced is never
        returned.
        """
        records = self.history(environment)
        index = len(records) - 1
        while index >= 0:
            current = records[index]
            if current.kind == "rollback" or current.previous_version == current.version:
                index = self._newest_index(records, current.version, before=index)
                continue
            if not current.previous_version:
                return None
            found = self._newest_index(records, current.previous_version, before=index)
            return records[found] if found >= 0 else None
        return None

    def environments(self) -> list[str]:
        rows = self._conn.execute(
            "SELECT DISTINCT environment FROM deployments ORDER BY environment"
        ).fetchall()
        return [r[0] for r in rows]

    def verify_chain(self) -> bool:
        """Validate the entire hash chain.  Returns False if tampered."""
        rows = self._conn.execute(
            "SELECT payload, entry_hash, prev_entry_hash FROM deployments ORDER BY id"
        ).fetchall()

        prev_hash = ""
        for payload, stored_hash, stored_prev in rows:
            if stored_prev != prev_hash:
                return False
            expected = Hasher.hash_bytes(f"{payload}{prev_hash}".encode("utf-8"))
            if expected != stored_hash:
                return False
            prev_hash = stored_hash

        return True

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _last_hash(self) -> str:
        row = self._conn.execute(
            "SELECT entry_hash FROM deployments ORDER BY id DESC LIMIT 1"
        ).fetchone()
        return row[0] if row else ""

    @staticmethod
    def _newest_index(records: list[DeploymentRecord], version: str, *, before: int) -> int:
        for i in range(before - 1, -1, -1):
            if records[i].version == version:
                return i
        return -1

    @staticmethod
    def _row_to_record(row: tuple) -> DeploymentRecord:
        record_id, payload, entry_hash, prev = row
        data = json.loads(payload)
        data.update(id=record_id, entry_hash=entry_hash, prev_entry_hash=prev)
        return DeploymentRecord.model_validate(data)
