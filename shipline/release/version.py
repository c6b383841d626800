"""VersionTagger — derives sortable release tags from commit and time."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Iterable

from shipline.errors import BuildFailure, DirtyWorkingTree
from shipline.release.models import ReleaseVersion
from shipline.vcs.repo import GitError, RepoManager

logger = logging.getLogger(__name__)

TAG_TIME_FORMAT = "%Y%m%d-%H%M%S"
DEFAULT_SHORT_LENGTH = 7

_TAG_RE = re.compile(
    r"^v(?P<commit>[0-9A-Za-z]+)-(?P<stamp>\d{8}-\d{6})(?:\.(?P<seq>\d{2,}))?$"
)
_COMMIT_RE = re.compile(r"^[0-9A-Za-z]+$")


def _to_utc(when: datetime) -> datetime:
    if when.tzinfo is None:
        return when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc)


def parse_tag(tag: str) -> ReleaseVersion:
    """Parse a tag string back into a :class:`ReleaseVersion`.

    Raises
    ------
    ValueError
        If *tag* is not of the form ``v<commit>-<YYYYMMDD-HHMMSS>[.NN]``.
    """
    match = _TAG_RE.match(tag)
    if match is None:
        raise ValueError(f"Not a release tag: {tag!r}")
    stamp = datetime.strptime(match["stamp"], TAG_TIME_FORMAT).replace(
        tzinfo=timezone.utc,
    )
    return ReleaseVersion(
        commit_short=match["commit"],
        timestamp=stamp,
        tag=tag,
        sequence=int(match["seq"] or 0),
    )


class VersionTagger:
    """Create :class:`ReleaseVersion` values.

    :meth:`tag` is a pure function of its inputs.  :meth:`tag_checkout`
    reads the commit from a repository and refuses to tag a dirty tree,
    since such a tag would not name the code that gets built.

    Parameters
    ----------
    repo:
        Repository to read ``HEAD`` from.  Only needed for
        :meth:`tag_checkout`.
    short_length:
        Number of commit characters kept in the tag.
    """

    def __init__(
        self,
        repo: RepoManager | None = None,
        *,
        short_length: int = DEFAULT_SHORT_LENGTH,
    ) -> None:
        self.repo = repo
        self.short_length = short_length

    def tag(
        self,
        commit: str,
        when: datetime,
        *,
        existing: Iterable[str] = (),
    ) -> ReleaseVersion:
        """Return the release version for *commit* built at *when*.

        If the plain tag already appears in *existing*, the lowest free
        ``.NN`` suffix is appended so the new tag stays unique and still
        sorts after the plain one.
        """
        commit = commit.strip()
        if not commit or not _COMMIT_RE.match(commit):
            raise ValueError(f"Invalid commit identifier: {commit!r}")

        commit_short = commit[: self.short_length]
        stamp = _to_utc(when).replace(microsecond=0)
        base = f"v{commit_short}-{stamp.strftime(TAG_TIME_FORMAT)}"

        taken = set(existing)
        tag = base
        sequence = 0
        while tag in taken:
            sequence += 1
            tag = f"{base}.{sequence:02d}"

        if sequence:
            logger.info("Tag %s already exists; using %s", base, tag)

        return ReleaseVersion(
            commit_short=commit_short,
            timestamp=stamp,
            tag=tag,
            sequence=sequence,
        )

    def tag_checkout(
        self,
        when: datetime | None = None,
        *,
        existing: Iterable[str] = (),
    ) -> tuple[ReleaseVersion, str]:
        """Tag the repository's ``HEAD``.

        Returns the version and the full commit hash it was derived from.

        Raises
        ------
        DirtyWorkingTree
            If the working tree has uncommitted changes.
        BuildFailure
            If the repository cannot be queried.
        """
        if self.repo is None:
            raise BuildFailure("No repository configured for tagging")

        try:
            dirty = self.repo.dirty_paths()
            commit = self.repo.head_commit()
        except GitError as exc:
            raise BuildFailure("Cannot read source checkout", detail=str(exc)) from exc

        if dirty:
            preview = ", ".join(dirty[:5])
            more = f" (+{len(dirty) - 5} more)" if len(dirty) > 5 else ""
            raise DirtyWorkingTree(
                "Refusing to tag a working tree with uncommitted changes",
                detail=f"{preview}{more}",
            )

        version = self.tag(
            commit,
            when or datetime.now(timezone.utc),
            existing=existing,
        )
        logger.info("Tagged %s as %s", commit, version.tag)
        return version, commit
