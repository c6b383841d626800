"""Publisher — pushes gated artifacts to the shared registry."""

from __future__ import annotations

import logging
from typing import Sequence

from shipline.errors import PublishFailure
from shipline.providers.base import ArtifactRegistry, ProviderError
from shipline.release.models import Artifact, artifact_coordinate

logger = logging.getLogger(__name__)


class Publisher:
    """Tag artifacts with registry coordinates and push them.

    Re-publishing the same version overwrites, so a retried run is safe.
    Callers must only publish artifacts that passed tests and the content
    gate.

    Parameters
    ----------
    registry:
        Destination registry.
    namespace:
        Registry namespace, e.g. a Docker Hub user or organisation.
    project:
        Repository name inside the namespace.
    """

    def __init__(self, registry: ArtifactRegistry, *, namespace: str, project: str) -> None:
        if not namespace:
            raise PublishFailure("No registry namespace configured")
        self.registry = registry
        self.namespace = namespace
        self.project = project

    def coordinate(self, artifact: Artifact) -> str:
        return artifact_coordinate(
            self.namespace, self.project, artifact.component, artifact.version.tag,
        )

    def publish(self, artifacts: Sequence[Artifact]) -> list[Artifact]:
        """Push every artifact; returns copies with ``coordinate`` set.

        Raises
        ------
        PublishFailure
            On the first push that fails.
        """
        published: list[Artifact] = []
        for artifact in artifacts:
            coordinate = self.coordinate(artifact)
            try:
                self.registry.push(artifact.content_ref, coordinate)
            except ProviderError as exc:
                raise PublishFailure(f"Push of {coordinate} failed", detail=str(exc)) from exc
            logger.info("Published %s", coordinate)
            published.append(artifact.model_copy(update={"coordinate": coordinate}))
        return published
