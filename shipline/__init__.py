"""shipline — build, verify, test, publish and deploy releases with rollback."""

__version__ = "1.0.0"

from shipline.config import ConfigManager, PipelineSettings
from shipline.definition import ComponentSpec, PipelineDefinition, load_pipeline_definition
from shipline.deployment.backup import BackupManager
from shipline.deployment.deployer import Deployer, ReleaseManifest
from shipline.deployment.health import HealthReport, HealthVerifier
from shipline.deployment.ledger import DeploymentLedger
from shipline.deployment.locking import RunLock
from shipline.deployment.models import BackupSnapshot, DeploymentRecord
from shipline.deployment.rollback import RollbackManager, RollbackResult
from shipline.errors import EXIT_CODES, FailureKind, PipelineError
from shipline.pipeline.orchestrator import Pipeline, PipelineReport
from shipline.pipeline.state import PipelineState
from shipline.release.builder import Builder
from shipline.release.content_gate import ContentGate
from shipline.release.models import Artifact, ProvenanceRecord, ReleaseVersion
from shipline.release.provenance import ProvenanceVerifier
from shipline.release.publisher import Publisher
from shipline.release.version import VersionTagger
from shipline.testrun.runner import TestRunner
from shipline.vcs.repo import RepoManager

__all__ = [
    "__version__",
    # Release
    "Artifact",
    "Builder",
    "ContentGate",
    "ProvenanceRecord",
    "ProvenanceVerifier",
    "Publisher",
    "ReleaseVersion",
    "VersionTagger",
    # Testing
    "TestRunner",
    # Deployment
    "BackupManager",
    "BackupSnapshot",
    "Deployer",
    "DeploymentLedger",
    "DeploymentRecord",
    "HealthReport",
    "HealthVerifier",
    "ReleaseManifest",
    "RollbackManager",
    "RollbackResult",
    "RunLock",
    # Orchestration
    "EXIT_CODES",
    "FailureKind",
    "Pipeline",
    "PipelineError",
    "PipelineReport",
    "PipelineState",
    # Configuration
    "ComponentSpec",
    "ConfigManager",
    "PipelineDefinition",
    "PipelineSettings",
    "RepoManager",
    "load_pipeline_definition",
]
