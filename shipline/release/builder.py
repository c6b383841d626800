"""Builder — builds every component into a provenance-stamped artifact."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Sequence

from shipline.definition import ComponentSpec
from shipline.errors import BuildFailure
from shipline.providers.base import ContainerRuntime, ProviderError
from shipline.release.hasher import Hasher
from shipline.release.models import Artifact, ProvenanceRecord, ReleaseVersion
from shipline.release.provenance import provenance_labels

logger = logging.getLogger(__name__)

RFC3339_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def local_image_ref(project: str, component: str, tag: str) -> str:
    """Local image name for one component build."""
    return f"{project}-{component}:{tag}"


class Builder:
    """Build all components of a release concurrently.

    Each image receives ``GIT_COMMIT``, ``BUILD_DATE``, ``SOURCE_HASH`` and
    ``VERSION_TAG`` build arguments, which its Dockerfile writes to
    ``/build-info.json``, and the same values as ``org.shipline.*``
    labels.  Components marked ``no_cache`` are always rebuilt from
    scratch.

    Parameters
    ----------
    runtime:
        Container runtime that performs the builds.
    components:
        Component build specs.
    project:
        Project name used in local image references.
    context_root:
        Checkout root that build contexts and critical paths are relative to.
    max_workers:
        Maximum concurrent builds.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        components: Sequence[ComponentSpec],
        *,
        project: str,
        context_root: str | Path,
        max_workers: int = 2,
    ) -> None:
        self.runtime = runtime
        self.components = list(components)
        self.project = project
        self.context_root = Path(context_root)
        self.max_workers = max(1, max_workers)

    def source_hash(self, spec: ComponentSpec) -> str:
        """Hash *spec*'s critical source path in the checkout."""
        try:
            return Hasher.hash_source(self.context_root / spec.critical_path)
        except FileNotFoundError as exc:
            raise BuildFailure(
                f"Cannot hash critical path of {spec.name}", detail=str(exc),
            ) from exc

    def provenance_for(self, spec: ComponentSpec, version: ReleaseVersion, commit: str) -> ProvenanceRecord:
        return ProvenanceRecord(
            git_commit=commit,
            build_date=version.timestamp.strftime(RFC3339_FORMAT),
            source_hash=self.source_hash(spec),
        )

    def build(self, version: ReleaseVersion, commit: str) -> list[Artifact]:
        """Build every component for *version* from *commit*.

        Returns artifacts in component order.

        Raises
        ------
        BuildFailure
            If any component fails.  No artifacts are returned then.
        """
        if not self.components:
            raise BuildFailure("No components to build")

        # Hash up front so a missing critical path fails before any build starts.
        stamps = {spec.name: self.provenance_for(spec, version, commit) for spec in self.components}

        built: dict[str, Artifact] = {}
        failures: dict[str, str] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {
                pool.submit(self._build_one, spec, version, stamps[spec.name]): spec.name
                for spec in self.components
            }
            for future in as_completed(futures):
                name = futures[future]
                try:
                    built[name] = future.result()
                except ProviderError as exc:
                    logger.error("Build of %s failed: %s", name, exc)
                    failures[name] = str(exc)

        if failures:
            raise BuildFailure(
                f"{len(failures)} component(s) failed to build",
                detail="; ".join(f"{n}: {msg}" for n, msg in sorted(failures.items())),
            )
        return [built[spec.name] for spec in self.components]

    def _build_one(
        self,
        spec: ComponentSpec,
        version: ReleaseVersion,
        provenance: ProvenanceRecord,
    ) -> Artifact:
        image_ref = local_image_ref(self.project, spec.name, version.tag)
        build_args = {
            **spec.build_args,
            "GIT_COMMIT": provenance.git_commit,
            "BUILD_DATE": provenance.build_date,
            "SOURCE_HASH": provenance.source_hash,
            "VERSION_TAG": version.tag,
        }
        if spec.no_cache:
            logger.info("Building %s without cache", spec.name)
        self.runtime.build(
            spec,
            image_ref,
            context_root=self.context_root,
            build_args=build_args,
            labels=provenance_labels(provenance),
            no_cache=spec.no_cache,
        )
        return Artifact(
            component=spec.name,
            version=version,
            provenance=provenance,
            content_ref=image_ref,
        )
