"""Deployer — swaps an environment over to a published release."""

from __future__ import annotations

import contextlib
import logging
import signal
import threading
from datetime import datetime, timezone
from typing import Callable, Iterator, Sequence

from pydantic import BaseModel, Field

from shipline.definition import ComponentSpec
from shipline.deployment.ledger import DeploymentLedger
from shipline.deployment.models import BackupSnapshot, DeploymentRecord
from shipline.errors import ContentGateViolation, DeployFailure, MigrationFailure
from shipline.providers.base import ArtifactRegistry, ContainerRuntime, MigrationRunner, ProviderError
from shipline.release.content_gate import ContentGate
from shipline.release.models import Artifact, ProvenanceRecord
from shipline.release.provenance import ProvenanceVerifier
from shipline.release.version import parse_tag

logger = logging.getLogger(__name__)


class ReleaseManifest(BaseModel):
    """What to deploy: one registry coordinate per component.

    ``provenance`` holds the recorded build metadata per component.  When
    a component has none, only ``commit`` is checked against what the
    pulled image embeds; a prefix match suffices when ``commit_is_prefix``
    is set (the commit is the abbreviated hash from the version tag).
    """

    version: str
    commit: str
    commit_is_prefix: bool = False
    artifacts: dict[str, str]
    provenance: dict[str, ProvenanceRecord] = Field(default_factory=dict)

    @classmethod
    def from_artifacts(cls, artifacts: Sequence[Artifact]) -> ReleaseManifest:
        if not artifacts:
            raise ValueError("manifest needs at least one artifact")
        versions = {a.version.tag for a in artifacts}
        if len(versions) != 1:
            raise ValueError(f"artifacts span several versions: {sorted(versions)}")
        missing = [a.component for a in artifacts if not a.coordinate]
        if missing:
            raise ValueError(f"unpublished artifacts: {', '.join(missing)}")
        return cls(
            version=versions.pop(),
            commit=artifacts[0].provenance.git_commit,
            artifacts={a.component: a.coordinate for a in artifacts},
            provenance={a.component: a.provenance for a in artifacts},
        )

    @classmethod
    def from_record(cls, record: DeploymentRecord) -> ReleaseManifest:
        commits = {p.git_commit for p in record.provenance.values()}
        if len(commits) == 1:
            commit, is_prefix = commits.pop(), False
        else:
            commit, is_prefix = parse_tag(record.version).commit_short, True
        return cls(
            version=record.version,
            commit=commit,
            commit_is_prefix=is_prefix,
            artifacts=dict(record.artifacts),
            provenance=dict(record.provenance),
        )

    @classmethod
    def from_tag(cls, version: str, coordinates: dict[str, str]) -> ReleaseManifest:
        """A manifest for a tag with no local build state.

        The commit comes from the tag, so only a commit prefix is checked.
        """
        return cls(
            version=version,
            commit=parse_tag(version).commit_short,
            commit_is_prefix=True,
            artifacts=dict(coordinates),
        )


class DeployAttempt(BaseModel):
    """Progress of one deploy, filled in step by step.

    Rollback reads it to decide what needs undoing.
    """

    environment: str
    version: str
    kind: str = "deploy"
    previous: DeploymentRecord | None = None
    backup_id: str = ""
    pulled: dict[str, str] = Field(default_factory=dict)
    provenance: dict[str, ProvenanceRecord] = Field(default_factory=dict)
    verified: list[str] = Field(default_factory=list)
    degraded: list[str] = Field(default_factory=list)
    stopped: list[str] = Field(default_factory=list)
    migrations_ran: bool = False
    started: list[str] = Field(default_factory=list)
    record: DeploymentRecord | None = None

    @property
    def mutated(self) -> bool:
        """True once anything in the environment has changed."""
        return bool(self.stopped or self.started or self.migrations_ran)


@contextlib.contextmanager
def deferred_interrupt() -> Iterator[None]:
    """Hold SIGINT until the block finishes, then raise KeyboardInterrupt.

    Signal handlers can only be installed from the main thread; elsewhere
    the block runs unprotected.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    received: list[int] = []

    def _hold(signum, frame) -> None:
        logger.warning("Interrupt received during container swap; finishing swap first")
        received.append(signum)

    previous = signal.signal(signal.SIGINT, _hold)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)
    if received:
        raise KeyboardInterrupt


class Deployer:
    """Pull, verify and start a release in one environment.

    Steps, in order: pull every artifact, re-verify provenance, stop the
    running containers, run migrations, start the new containers, and
    append a :class:`DeploymentRecord`.  Any failure before the record is
    written leaves the previous record active.

    Parameters
    ----------
    runtime:
        Container runtime of the target host.
    registry:
        Registry to pull from.
    ledger:
        Deployment ledger of the target host.
    components:
        Component specs (container names, ports, env).
    project:
        Project name, used to derive container names.
    environment:
        Target environment name.
    migrations:
        Migration runner, or *None* when the project has none.
    gate:
        Content gate applied to artifacts that carry no provenance.
    clock:
        Returns the current UTC time; replaceable in tests.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        registry: ArtifactRegistry,
        ledger: DeploymentLedger,
        components: Sequence[ComponentSpec],
        *,
        project: str,
        environment: str,
        migrations: MigrationRunner | None = None,
        gate: ContentGate | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.runtime = runtime
        self.registry = registry
        self.ledger = ledger
        self.components = {c.name: c for c in components}
        self.project = project
        self.environment = environment
        self.migrations = migrations
        self.gate = gate
        self.verifier = ProvenanceVerifier(runtime)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def begin(self, manifest: ReleaseManifest, *, kind: str = "deploy") -> DeployAttempt:
        """Start tracking a deploy of *manifest*."""
        return DeployAttempt(
            environment=self.environment,
            version=manifest.version,
            kind=kind,
            previous=self.ledger.active(self.environment),
        )

    def deploy(
        self,
        manifest: ReleaseManifest,
        *,
        backup: BackupSnapshot | None = None,
        skip_migrations: bool = False,
        allow_without_backup: bool = False,
        attempt: DeployAttempt | None = None,
    ) -> DeployAttempt:
        """Deploy *manifest* and return the completed attempt.

        Pass an *attempt* from :meth:`begin` to observe progress if this
        raises.

        Raises
        ------
        ProvenanceMismatch
            If a pulled artifact is not what was built.  Nothing has been
            changed then.
        ContentGateViolation
            If an artifact without provenance fails the content gate.
        MigrationFailure
            If migrations fail.  The backup is kept; nothing is restored.
        DeployFailure
            If pulling, stopping or starting fails, or no backup exists.
        """
        attempt = attempt or self.begin(manifest)
        attempt.backup_id = backup.backup_id if backup else ""
        specs = self._specs_for(manifest, partial=attempt.kind == "rollback")

        self._pull_and_verify(manifest, attempt)

        will_migrate = (
            not skip_migrations
            and self.migrations is not None
            and self._pending_migrations()
        )
        if backup is None and not allow_without_backup:
            raise DeployFailure(
                "Refusing to deploy without a backup",
                detail="take a snapshot or pass --skip-backup",
            )
        if skip_migrations and self.migrations is not None:
            logger.warning("Skipping migrations for %s", manifest.version)

        # The record is part of the swap: an interrupt must not land between them.
        with deferred_interrupt():
            self._swap(manifest, specs, attempt, will_migrate)
            record = DeploymentRecord(
                environment=self.environment,
                version=manifest.version,
                artifacts=dict(manifest.artifacts),
                provenance={**attempt.provenance, **manifest.provenance},
                deployed_at=self._clock(),
                previous_version=attempt.previous.version if attempt.previous else "",
                migrations_ran=attempt.migrations_ran,
                backup_id=attempt.backup_id,
                kind=attempt.kind,
            )
            attempt.record = self.ledger.append(record)
        logger.info("Deployed %s to %s", manifest.version, self.environment)
        return attempt

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _specs_for(self, manifest: ReleaseManifest, *, partial: bool) -> list[ComponentSpec]:
        unknown = sorted(set(manifest.artifacts) - set(self.components))
        if unknown:
            raise DeployFailure("Release names unknown components", detail=", ".join(unknown))
        missing = sorted(set(self.components) - set(manifest.artifacts))
        if missing and not partial:
            raise DeployFailure("Release lacks components", detail=", ".join(missing))
        return [self.components[name] for name in manifest.artifacts]

    def _pull_and_verify(self, manifest: ReleaseManifest, attempt: DeployAttempt) -> None:
        for component, coordinate in manifest.artifacts.items():
            try:
                attempt.pulled[component] = self.registry.pull(coordinate)
            except ProviderError as exc:
                raise DeployFailure(f"Pull of {coordinate} failed", detail=str(exc)) from exc

        for component, image_ref in attempt.pulled.items():
            expected = manifest.provenance.get(component)
            result = self.verifier.verify(
                image_ref,
                expected_commit=expected.git_commit if expected else manifest.commit,
                expected_source_hash=expected.source_hash if expected else None,
                commit_is_prefix=expected is None and manifest.commit_is_prefix,
            )
            if result.embedded is not None:
                attempt.provenance[component] = result.embedded
            if result.degraded:
                attempt.degraded.append(component)
                self._gate(component, image_ref)
            else:
                attempt.verified.append(component)

    def _gate(self, component: str, image_ref: str) -> None:
        if self.gate is None:
            return
        spec = self.components[component]
        try:
            self.gate.check(component, self.runtime.iter_payload(image_ref, spec.payload_root))
        except ProviderError as exc:
            raise ContentGateViolation(
                f"Cannot read payload of {component}", detail=str(exc),
            ) from exc

    def _pending_migrations(self) -> bool:
        try:
            return self.migrations.pending()
        except ProviderError as exc:
            raise MigrationFailure("Cannot determine pending migrations", detail=str(exc)) from exc

    def _swap(
        self,
        manifest: ReleaseManifest,
        specs: list[ComponentSpec],
        attempt: DeployAttempt,
        will_migrate: bool,
    ) -> None:
        for spec in self.components.values():
            name = spec.container(self.project)
            try:
                self.runtime.stop(name)
            except ProviderError as exc:
                raise DeployFailure(f"Could not stop {name}", detail=str(exc)) from exc
            attempt.stopped.append(spec.name)

        if will_migrate:
            attempt.migrations_ran = True
            try:
                self.migrations.apply()
            except ProviderError as exc:
                raise MigrationFailure(
                    "Migrations failed",
                    detail=f"{exc}; backup {attempt.backup_id or '(none)'} kept for manual recovery",
                ) from exc

        for spec in specs:
            name = spec.container(self.project)
            try:
                self.runtime.start(name, attempt.pulled[spec.name], spec)
            except ProviderError as exc:
                raise DeployFailure(f"Could not start {name}", detail=str(exc)) from exc
            attempt.started.append(spec.name)
