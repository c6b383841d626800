"""Source checkout queries used for tagging and provenance."""

from shipline.vcs.repo import GitError, RepoManager

__all__ = ["GitError", "RepoManager"]
