"""Source hashing for provenance stamps (SHA-256 via stdlib hashlib)."""

from __future__ import annotations

import hashlib
from pathlib import Path

_SKIP_DIRS = {".git", "__pycache__", ".pytest_cache", "node_modules", "target", "_build"}


class Hasher:
    """SHA-256 digests for files and source trees."""

    @staticmethod
    def hash_bytes(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    @staticmethod
    def hash_file(path: str | Path) -> str:
        """Return the SHA-256 hex digest of the file at *path*."""
        h = hashlib.sha256()
        with Path(path).open("rb") as f:
            while True:
                chunk = f.read(65536)
                if not chunk:
                    break
                h.update(chunk)
        return h.hexdigest()

    @staticmethod
    def hash_tree(path: str | Path) -> str:
        """Return one digest covering every file under *path*.

        Files are visited in sorted relative-path order, and both the
        path and the content hash feed the digest, so renames change it.
        VCS metadata and build output directories are skipped.
        """
        root = Path(path)
        h = hashlib.sha256()
        files = sorted(
            f for f in root.rglob("*")
            if f.is_file() and not _SKIP_DIRS.intersection(f.relative_to(root).parts)
        )
        for f in files:
            rel = f.relative_to(root).as_posix()
            h.update(f"{rel}:{Hasher.hash_file(f)}\n".encode("utf-8"))
        return h.hexdigest()

    @staticmethod
    def hash_source(path: str | Path) -> str:
        """Hash a critical source path, which may be a file or a directory.

        Raises
        ------
        FileNotFoundError
            If *path* does not exist.
        """
        p = Path(path)
        if p.is_file():
            return Hasher.hash_file(p)
        if p.is_dir():
            return Hasher.hash_tree(p)
        raise FileNotFoundError(f"Critical source path not found: {p}")
