"""Failure taxonomy for the release pipeline.

Every stage failure is a :class:`PipelineError` subclass carrying a
:class:`FailureKind` and the process exit code the CLI returns for it.
"""

from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """Stage-specific failure categories."""

    CONFIG = "config_error"
    BUILD = "build_failure"
    PROVENANCE = "provenance_mismatch"
    TEST = "test_failure"
    CONTENT_GATE = "content_gate_violation"
    PUBLISH = "publish_failure"
    BACKUP = "backup_failure"
    DEPLOY = "deploy_failure"
    HEALTH = "health_check_failure"
    MIGRATION = "migration_failure"
    ROLLBACK = "rollback_failure"
    LOCK = "lock_held"


EXIT_CODES: dict[FailureKind, int] = {
    FailureKind.CONFIG: 2,
    FailureKind.BUILD: 10,
    FailureKind.PROVENANCE: 11,
    FailureKind.TEST: 12,
    FailureKind.CONTENT_GATE: 13,
    FailureKind.PUBLISH: 14,
    FailureKind.BACKUP: 15,
    FailureKind.DEPLOY: 16,
    FailureKind.HEALTH: 17,
    FailureKind.MIGRATION: 18,
    FailureKind.ROLLBACK: 19,
    FailureKind.LOCK: 20,
}


class PipelineError(Exception):
    """Base class for all fatal stage failures."""

    kind: FailureKind = FailureKind.CONFIG

    def __init__(self, message: str, *, detail: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.kind]

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message


class ConfigError(PipelineError):
    """Invalid configuration, pipeline definition, or CLI usage."""

    kind = FailureKind.CONFIG


class BuildFailure(PipelineError):
    """A component build failed, or the tree cannot be tagged."""

    kind = FailureKind.BUILD


class DirtyWorkingTree(BuildFailure):
    """The checkout has uncommitted changes, so no tag can name it."""


class ProvenanceMismatch(PipelineError):
    """Embedded provenance disagrees with the expected source state."""

    kind = FailureKind.PROVENANCE


class TestFailure(PipelineError):
    """At least one test still failed at the final tier."""

    __test__ = False
    kind = FailureKind.TEST


class ContentGateViolation(PipelineError):
    """A forbidden marker was found in an artifact payload."""

    kind = FailureKind.CONTENT_GATE


class PublishFailure(PipelineError):
    """Pushing an artifact to the registry failed."""

    kind = FailureKind.PUBLISH


class BackupFailure(PipelineError):
    """The pre-deploy store snapshot could not be taken."""

    kind = FailureKind.BACKUP


class DeployFailure(PipelineError):
    """Pulling, verifying or swapping containers failed."""

    kind = FailureKind.DEPLOY


class HealthCheckFailure(PipelineError):
    """The deployed system did not become healthy within max-wait."""

    kind = FailureKind.HEALTH


class MigrationFailure(PipelineError):
    """A data migration failed; the backup is kept for manual recovery."""

    kind = FailureKind.MIGRATION


class RollbackFailure(PipelineError):
    """The rollback itself failed; operator intervention is required."""

    kind = FailureKind.ROLLBACK


class LockHeld(PipelineError):
    """Another pipeline run currently owns the target environment."""

    kind = FailureKind.LOCK
