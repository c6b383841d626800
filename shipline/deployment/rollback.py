"""RollbackManager — returns an environment to its previous release."""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import BaseModel

from shipline.deployment.backup import BackupManager
from shipline.deployment.deployer import DeployAttempt, Deployer, ReleaseManifest
from shipline.deployment.models import DeploymentRecord
from shipline.errors import PipelineError, RollbackFailure
from shipline.providers.base import ProviderError

logger = logging.getLogger(__name__)


class RollbackState(str, Enum):
    """Terminal states of a rollback."""

    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class RollbackResult(BaseModel):
    """What a rollback achieved.

    ``partial`` is set on failure when some steps already ran, so the
    environment is neither the failed nor the previous release.
    """

    state: RollbackState
    target_version: str = ""
    restored_backup: str = ""
    partial: bool = False
    message: str = ""
    record: DeploymentRecord | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == RollbackState.ROLLED_BACK


class RollbackManager:
    """Redeploy the previous release by its exact recorded coordinates.

    The pre-deploy backup is restored only when migrations ran in the
    deploy being undone, and only after every container is stopped.

    Parameters
    ----------
    deployer:
        Deployer for the environment being rolled back.
    backups:
        Snapshot manager, or *None* when the environment has no store.
    """

    def __init__(self, deployer: Deployer, backups: BackupManager | None = None) -> None:
        self.deployer = deployer
        self.backups = backups

    @property
    def environment(self) -> str:
        return self.deployer.environment

    def target_for(self, attempt: DeployAttempt | None = None) -> DeploymentRecord | None:
        """The release to return to.

        After a failed *attempt* that is whatever was active before it;
        without one it is the release the active record superseded.
        """
        if attempt is not None:
            return attempt.previous
        return self.deployer.ledger.superseded(self.environment)

    def rollback(self, attempt: DeployAttempt | None = None) -> RollbackResult:
        """Undo *attempt*, or the active release when *attempt* is None."""
        target = self.target_for(attempt)
        if target is None:
            logger.error("No previous release to roll back to in %s", self.environment)
            return RollbackResult(
                state=RollbackState.FAILED,
                partial=bool(attempt and attempt.mutated),
                message="no previous release recorded",
            )

        if attempt is not None:
            migrations_ran, backup_id = attempt.migrations_ran, attempt.backup_id
        else:
            active = self.deployer.ledger.active(self.environment)
            migrations_ran = bool(active and active.migrations_ran)
            backup_id = active.backup_id if active else ""

        logger.info("Rolling back %s to %s", self.environment, target.version)
        stopped = False
        restored = ""
        try:
            if migrations_ran:
                self._stop_all()
                stopped = True
                restored = self._restore(backup_id)

            manifest = ReleaseManifest.from_record(target)
            redeploy = self.deployer.begin(manifest, kind="rollback")
            self.deployer.deploy(
                manifest,
                skip_migrations=True,
                allow_without_backup=True,
                attempt=redeploy,
            )
            self._check_running(redeploy)
        except (PipelineError, ProviderError) as exc:
            logger.error("Rollback to %s failed: %s", target.version, exc)
            return RollbackResult(
                state=RollbackState.FAILED,
                target_version=target.version,
                restored_backup=restored,
                partial=stopped or bool(attempt and attempt.mutated),
                message=str(exc),
            )

        logger.info("Rolled back %s to %s", self.environment, target.version)
        return RollbackResult(
            state=RollbackState.ROLLED_BACK,
            target_version=target.version,
            restored_backup=restored,
            message=f"rolled back to {target.version}",
            record=redeploy.record,
        )

    def _stop_all(self) -> None:
        for spec in self.deployer.components.values():
            self.deployer.runtime.stop(spec.container(self.deployer.project))

    def _restore(self, backup_id: str) -> str:
        if not backup_id:
            raise RollbackFailure("Migrations ran but no backup was taken")
        if self.backups is None:
            raise RollbackFailure("No backup manager to restore from", detail=backup_id)
        self.backups.restore(backup_id)
        return backup_id

    def _check_running(self, redeploy: DeployAttempt) -> None:
        """Every redeployed component runs exactly the image that was pulled."""
        for component, coordinate in redeploy.pulled.items():
            spec = self.deployer.components[component]
            running = self.deployer.runtime.running_image(spec.container(self.deployer.project))
            if running != coordinate:
                raise RollbackFailure(
                    f"{component} runs {running or 'nothing'} after rollback",
                    detail=f"expected {coordinate}",
                )
