"""Run-level lock giving one pipeline run exclusive use of an environment."""

from __future__ import annotations

import json
import logging
import os
import socket
import time
import uuid
from dataclasses import dataclass
from pathlib import Path

from shipline.errors import LockHeld

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 3600  # 1 hour in seconds


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass
class LockInfo:
    """Information about an active lock."""

    environment: str
    owner: str
    timestamp: float
    timeout: float = DEFAULT_LOCK_TIMEOUT

    @property
    def is_expired(self) -> bool:
        return (time.time() - self.timestamp) > self.timeout

    def to_dict(self) -> dict:
        return {
            "environment": self.environment,
            "owner": self.owner,
            "timestamp": self.timestamp,
            "timeout": self.timeout,
        }

    @classmethod
    def from_dict(cls, data: dict) -> LockInfo:
        return cls(
            environment=data["environment"],
            owner=data["owner"],
            timestamp=data.get("timestamp", 0),
            timeout=data.get("timeout", DEFAULT_LOCK_TIMEOUT),
        )


class RunLock:
    """Exclusive, expiring lock on one environment.

    The lock is a JSON file under ``<lock_dir>/<environment>.lock``,
    created atomically.  A lock older than *timeout* is stale and is
    cleared by the next run; long runs call :meth:`refresh` to keep
    theirs alive.  Use as a context manager::

        with RunLock(lock_dir, "production"):
            ...

    Parameters
    ----------
    lock_dir:
        Directory holding lock files.
    environment:
        Environment the lock protects.
    timeout:
        Lock timeout in seconds.
    owner:
        Identifier written into the lock; defaults to ``host:pid``.
    """

    def __init__(
        self,
        lock_dir: str | Path,
        environment: str,
        *,
        timeout: float = DEFAULT_LOCK_TIMEOUT,
        owner: str | None = None,
    ) -> None:
        self.lock_dir = Path(lock_dir)
        self.environment = environment
        self.timeout = timeout
        self.owner = owner or default_owner()
        self._held = False

    @property
    def path(self) -> Path:
        return self.lock_dir / f"{self.environment}.lock"

    def current(self) -> LockInfo | None:
        """Return the live lock on the environment, or None.

        Stale locks and old unreadable locks are removed.  An unreadable
        lock younger than *timeout* counts as held.
        """
        try:
            text = self.path.read_text(encoding="utf-8")
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            return None

        try:
            lock = LockInfo.from_dict(json.loads(text))
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError):
            if time.time() - mtime < self.timeout:
                return LockInfo(
                    environment=self.environment,
                    owner="unknown (unreadable lock file)",
                    timestamp=mtime,
                    timeout=self.timeout,
                )
            logger.warning("Removing corrupted lock %s", self.path)
            return None if self._clear(text) else self.current()

        if lock.is_expired:
            logger.warning(
                "Clearing stale lock on %s (held by %s)", self.environment, lock.owner,
            )
            return None if self._clear(text) else self.current()

        return lock

    def acquire(self) -> LockInfo:
        """Take the lock.

        The lock file is written in full under a temporary name and then
        hard-linked into place, so no reader ever sees a partial lock.

        Raises
        ------
        LockHeld
            If another live run holds it.
        """
        existing = self.current()
        if existing is not None:
            raise LockHeld(
                f"Environment '{self.environment}' is locked",
                detail=f"held by {existing.owner}",
            )

        lock = self._new_info()
        tmp = self._write_temp(lock)
        try:
            os.link(tmp, self.path)
        except FileExistsError as exc:
            raise LockHeld(
                f"Environment '{self.environment}' is locked",
                detail="lock taken concurrently",
            ) from exc
        finally:
            tmp.unlink(missing_ok=True)

        self._held = True
        logger.debug("Locked %s for %s", self.environment, self.owner)
        return lock

    def refresh(self) -> LockInfo | None:
        """Renew the timestamp of a held lock so it does not go stale.

        Returns None when this instance holds no lock.

        Raises
        ------
        LockHeld
            If the lock expired and another run has taken it.
        """
        if not self._held:
            return None
        holder = self.current()
        if holder is None or holder.owner != self.owner:
            self._held = False
            raise LockHeld(
                f"Lost the lock on '{self.environment}'",
                detail=f"now held by {holder.owner}" if holder else "lock expired",
            )
        lock = self._new_info()
        os.replace(self._write_temp(lock), self.path)
        logger.debug("Refreshed lock on %s", self.environment)
        return lock

    def release(self) -> bool:
        """Remove the lock if this instance holds it."""
        if not self._held:
            return False
        self.path.unlink(missing_ok=True)
        self._held = False
        logger.debug("Unlocked %s", self.environment)
        return True

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _new_info(self) -> LockInfo:
        return LockInfo(
            environment=self.environment,
            owner=self.owner,
            timestamp=time.time(),
            timeout=self.timeout,
        )

    def _write_temp(self, lock: LockInfo) -> Path:
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        tmp = self.lock_dir / f".{self.path.name}.{uuid.uuid4().hex}"
        tmp.write_text(json.dumps(lock.to_dict(), indent=2), encoding="utf-8")
        return tmp

    def _clear(self, seen: str) -> bool:
        """Remove the lock file if it still holds *seen*.

        Returns False when another run replaced it in the meantime; its
        lock is put back.
        """
        claimed = self.lock_dir / f".{self.path.name}.{uuid.uuid4().hex}.clearing"
        try:
            os.rename(self.path, claimed)
        except FileNotFoundError:
            return True
        try:
            if claimed.read_text(encoding="utf-8") == seen:
                return True
            try:
                os.link(claimed, self.path)
            except FileExistsError:
                pass
            return False
        finally:
            claimed.unlink(missing_ok=True)
