"""Release records: versions, provenance, and artifacts."""

from __future__ import annotations

import json
from datetime import datetime

from pydantic import BaseModel, ConfigDict


class ReleaseVersion(BaseModel):
    """Canonical identifier of one build attempt.

    ``tag`` has the form ``v<commit_short>-<YYYYMMDD-HHMMSS>``, with an
    optional ``.NN`` build-sequence suffix when two builds of the same
    commit land in the same second.
    """

    model_config = ConfigDict(frozen=True)

    commit_short: str
    timestamp: datetime
    tag: str
    sequence: int = 0

    def __str__(self) -> str:
        return self.tag


class ProvenanceRecord(BaseModel):
    """Build metadata embedded into every artifact."""

    model_config = ConfigDict(frozen=True)

    git_commit: str
    build_date: str
    source_hash: str

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), indent=2, sort_keys=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> ProvenanceRecord:
        return cls.model_validate(json.loads(raw))


class Artifact(BaseModel):
    """A built, versioned, provenance-stamped deployable unit.

    ``content_ref`` is the local image reference the build produced;
    ``coordinate`` is filled in once the artifact is published.
    """

    model_config = ConfigDict(frozen=True)

    component: str
    version: ReleaseVersion
    provenance: ProvenanceRecord
    content_ref: str
    coordinate: str = ""

    @property
    def tag(self) -> str:
        """The component-scoped tag, e.g. ``backend-vabc123-20260205-163600``."""
        return f"{self.component}-{self.version.tag}"


def artifact_coordinate(namespace: str, project: str, component: str, tag: str) -> str:
    """Return ``<namespace>/<project>:<component>-<tag>``."""
    return f"{namespace}/{project}:{component}-{tag}"
