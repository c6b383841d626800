"""Release stages: tagging, building, provenance, content gate, publishing."""

from shipline.release.builder import Builder, local_image_ref
from shipline.release.content_gate import ContentGate, GateFinding, GateReport
from shipline.release.hasher import Hasher
from shipline.release.models import Artifact, ProvenanceRecord, ReleaseVersion, artifact_coordinate
from shipline.release.provenance import (
    PROVENANCE_PATH,
    ProvenanceVerifier,
    VerificationResult,
    commits_match,
    provenance_labels,
)
from shipline.release.publisher import Publisher
from shipline.release.version import VersionTagger, parse_tag

__all__ = [
    "PROVENANCE_PATH",
    "Artifact",
    "Builder",
    "ContentGate",
    "GateFinding",
    "GateReport",
    "Hasher",
    "ProvenanceRecord",
    "ProvenanceVerifier",
    "Publisher",
    "ReleaseVersion",
    "VerificationResult",
    "VersionTagger",
    "artifact_coordinate",
    "commits_match",
    "local_image_ref",
    "parse_tag",
    "provenance_labels",
]
