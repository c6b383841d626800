"""Deployment stages: backup, deploy, health check, rollback, ledger."""

from shipline.deployment.backup import BackupManager
from shipline.deployment.deployer import DeployAttempt, Deployer, ReleaseManifest, deferred_interrupt
from shipline.deployment.health import CheckResult, HealthReport, HealthVerifier
from shipline.deployment.ledger import DeploymentLedger
from shipline.deployment.locking import LockInfo, RunLock
from shipline.deployment.models import BackupSnapshot, DeploymentRecord
from shipline.deployment.rollback import RollbackManager, RollbackResult, RollbackState

__all__ = [
    "BackupManager",
    "BackupSnapshot",
    "CheckResult",
    "DeployAttempt",
    "Deployer",
    "DeploymentLedger",
    "DeploymentRecord",
    "HealthReport",
    "HealthVerifier",
    "LockInfo",
    "ReleaseManifest",
    "RollbackManager",
    "RollbackResult",
    "RollbackState",
    "RunLock",
    "deferred_interrupt",
]
