"""Pipeline — runs the release stages in order and reports the outcome.

Each public command (:meth:`Pipeline.build`, :meth:`Pipeline.test`,
:meth:`Pipeline.push`, :meth:`Pipeline.deploy`, :meth:`Pipeline.rollback`
and :meth:`Pipeline.release`) returns a :class:`PipelineReport`; stage
failures never escape as exceptions.  ``KeyboardInterrupt`` does, between
stages.
"""

from __future__ import annotations

import contextlib
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

from pydantic import BaseModel, Field

from shipline.config import ConfigManager, PipelineSettings
from shipline.definition import ComponentSpec, PipelineDefinition, load_pipeline_definition
from shipline.deployment.backup import BackupManager
from shipline.deployment.deployer import DeployAttempt, Deployer, ReleaseManifest
from shipline.deployment.health import HealthVerifier
from shipline.deployment.ledger import DeploymentLedger
from shipline.deployment.locking import RunLock
from shipline.deployment.models import BackupSnapshot
from shipline.deployment.rollback import RollbackManager, RollbackResult, RollbackState
from shipline.errors import (
    BackupFailure,
    ConfigError,
    ContentGateViolation,
    DeployFailure,
    FailureKind,
    HealthCheckFailure,
    PipelineError,
    PublishFailure,
    RollbackFailure,
)
from shipline.pipeline.state import PipelineState, StateMachine
from shipline.pipeline.workspace import BuildState, Workspace
from shipline.providers.base import (
    ArtifactRegistry,
    ContainerRuntime,
    HealthProbe,
    MigrationRunner,
    ProviderError,
    StoreBackup,
    TestExecutor,
)
from shipline.release.builder import Builder, local_image_ref
from shipline.release.content_gate import ContentGate
from shipline.release.models import Artifact, artifact_coordinate
from shipline.release.provenance import ProvenanceVerifier
from shipline.release.publisher import Publisher
from shipline.release.version import VersionTagger, parse_tag
from shipline.testrun.runner import TestRunner, TestRunReport
from shipline.vcs.repo import RepoManager

logger = logging.getLogger(__name__)

TESTED_ALIAS = "tested"
TEST_SUMMARY_FILE = "test-summary.json"
PRODUCTION_ENV = "production"
TEST_STORE_LOCK = "test-store"


class StageOutcome(BaseModel):
    """Result of one stage: success, or failure kind plus detail."""

    stage: PipelineState
    ok: bool = True
    kind: FailureKind | None = None
    detail: str = ""


class PipelineReport(BaseModel):
    """Everything an operator needs to know about one run."""

    command: str
    state: PipelineState = PipelineState.IDLE
    version: str = ""
    stages: list[StageOutcome] = Field(default_factory=list)
    failure: StageOutcome | None = None
    rollback: RollbackResult | None = None
    tests: dict[str, Any] | None = None
    exit_code: int = 0
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def describe(self) -> str:
        """Human-readable summary, one line per stage."""
        lines = [f"shipline {self.command}: {self.state.value}"]
        if self.version:
            lines.append(f"  version: {self.version}")
        for outcome in self.stages:
            mark = "ok" if outcome.ok else f"FAILED ({outcome.kind.value if outcome.kind else '?'})"
            lines.append(f"  {outcome.stage.value:<16} {mark}")
            if outcome.detail:
                lines.append(f"      {outcome.detail}")
        if self.rollback is not None:
            if self.rollback.succeeded:
                lines.append(f"  rollback: rolled back to {self.rollback.target_version}")
            elif self.rollback.partial:
                lines.append("  rollback: PARTIAL, manual intervention required")
            else:
                lines.append("  rollback: FAILED, manual intervention required")
        if self.message:
            lines.append(f"  {self.message}")
        return "\n".join(lines)


class _Run:
    """State machine plus report for one command invocation."""

    def __init__(self, command: str, *, heartbeat: Callable[[], None] | None = None) -> None:
        self.machine = StateMachine()
        self.report = PipelineReport(command=command)
        self._heartbeat = heartbeat

    @contextlib.contextmanager
    def stage(self, state: PipelineState) -> Iterator[None]:
        if self._heartbeat is not None:
            self._heartbeat()
        self.enter(state)
        logger.info("Stage: %s", state.value)
        try:
            yield
        except PipelineError as exc:
            self.report.stages.append(StageOutcome(
                stage=state, ok=False, kind=exc.kind, detail=str(exc),
            ))
            raise
        self.report.stages.append(StageOutcome(stage=state))

    def enter(self, state: PipelineState) -> None:
        self.machine.enter(state)
        self.report.state = state

    def finish(
        self,
        state: PipelineState = PipelineState.DONE,
        *,
        exit_code: int = 0,
        message: str = "",
    ) -> PipelineReport:
        self.enter(state)
        self.report.exit_code = exit_code
        self.report.message = message
        return self.report

    def fail(self, exc: PipelineError) -> PipelineReport:
        logger.error("%s failed: %s", self.report.command, exc)
        failed = next((s for s in reversed(self.report.stages) if not s.ok), None)
        self.report.failure = failed or StageOutcome(
            stage=self.machine.state, ok=False, kind=exc.kind, detail=str(exc),
        )
        return self.finish(PipelineState.FAILED, exit_code=exc.exit_code, message=str(exc))


class Pipeline:
    """The release pipeline for one project checkout.

    Parameters
    ----------
    project_root:
        Checkout root.
    settings:
        Resolved settings (see :meth:`PipelineSettings.resolve`).
    definition:
        Components, suite, gate, store and migrations.
    runtime, registry, probe:
        Container runtime, artifact registry and health probe.
    executor:
        Test executor; required by :meth:`test`.
    store, test_store:
        Backup providers for the deploy target's store and the test store.
    migrations:
        Migration runner, or *None*.
    repo:
        Source checkout; defaults to *project_root*.
    clock:
        Returns the current UTC time.
    monotonic, sleep:
        Used by health polling; replaceable in tests.
    """

    def __init__(
        self,
        project_root: str | Path,
        settings: PipelineSettings,
        definition: PipelineDefinition,
        *,
        runtime: ContainerRuntime,
        registry: ArtifactRegistry,
        probe: HealthProbe,
        executor: TestExecutor | None = None,
        store: StoreBackup | None = None,
        test_store: StoreBackup | None = None,
        migrations: MigrationRunner | None = None,
        repo: RepoManager | None = None,
        clock: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.project_root = Path(project_root)
        self.settings = settings
        self.definition = definition
        self.runtime = runtime
        self.registry = registry
        self.probe = probe
        self.executor = executor
        self.store = store
        self.test_store = test_store
        self.migrations = migrations
        self.repo = repo or RepoManager(self.project_root)
        self.workspace = Workspace(settings.state_dir)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._monotonic = monotonic
        self._sleep = sleep
        self._ledger: DeploymentLedger | None = None
        self._locks: list[RunLock] = []

    @classmethod
    def from_project(cls, project_root: str | Path, *, env_name: str | None = None) -> Pipeline:
        """Wire the Docker, HTTP and command providers for a checkout."""
        from shipline.providers.docker import DockerRegistry, DockerRuntime
        from shipline.providers.http import ServiceHealthProbe
        from shipline.providers.junit import CommandTestExecutor
        from shipline.providers.migrations import CommandMigrationRunner
        from shipline.providers.store import store_from_spec

        root = Path(project_root).resolve()
        settings = ConfigManager().load_settings(root, env_name=env_name)
        definition = load_pipeline_definition(root)
        runtime = DockerRuntime()

        suite = definition.suite
        executor = None
        if suite.command:
            executor = CommandTestExecutor(suite.command, report=suite.report, cwd=root / suite.cwd)

        migrations = None
        if definition.migrations.command:
            migrations = CommandMigrationRunner(
                definition.migrations.command,
                directory=definition.migrations.directory or None,
                cwd=root,
            )

        return cls(
            root,
            settings,
            definition,
            runtime=runtime,
            registry=DockerRegistry(),
            probe=ServiceHealthProbe(runtime, project=settings.project),
            executor=executor,
            store=store_from_spec(definition.store),
            test_store=store_from_spec(definition.store, for_tests=True),
            migrations=migrations,
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def build(self) -> PipelineReport:
        """Tag the checkout, build every component, verify provenance."""
        run = _Run("build", heartbeat=self._refresh_locks)
        try:
            self._build(run)
        except PipelineError as exc:
            return run.fail(exc)
        return run.finish(message=f"built {run.report.version}")

    def test(self, *, load_prod_data: bool = False) -> PipelineReport:
        """Run the tiered test suite and the content gate on the last build."""
        run = _Run("test", heartbeat=self._refresh_locks)
        try:
            with self._lock(TEST_STORE_LOCK):
                self._test(run, load_prod_data=load_prod_data)
        except PipelineError as exc:
            return run.fail(exc)
        return run.finish(message=f"{run.report.version} passed tests and content gate")

    def push(self) -> PipelineReport:
        """Publish the last build, provided it passed tests and the gate."""
        run = _Run("push", heartbeat=self._refresh_locks)
        try:
            self._push(run)
        except PipelineError as exc:
            return run.fail(exc)
        return run.finish(message=f"published {run.report.version}")

    def deploy(
        self,
        version: str,
        *,
        skip_backup: bool = False,
        skip_migrations: bool = False,
    ) -> PipelineReport:
        """Back up, deploy *version*, health-check, and roll back on failure."""
        run = _Run("deploy", heartbeat=self._refresh_locks)
        try:
            with self._lock(self.settings.env):
                return self._deploy(
                    run, version, skip_backup=skip_backup, skip_migrations=skip_migrations,
                )
        except PipelineError as exc:
            return run.fail(exc)

    def rollback(self) -> PipelineReport:
        """Return the environment to the release the active one superseded."""
        run = _Run("rollback", heartbeat=self._refresh_locks)
        try:
            with self._lock(self.settings.env):
                deployer = self._deployer()
                manager = RollbackManager(deployer, self._backup_manager())
                with run.stage(PipelineState.ROLLING_BACK):
                    result = manager.rollback()
                    run.report.rollback = result
                    if result.succeeded:
                        result = self._confirm_rollback(result)
                        run.report.rollback = result
                    if not result.succeeded:
                        raise RollbackFailure("Rollback failed", detail=result.message)
                run.report.version = result.target_version
        except PipelineError as exc:
            return run.fail(exc)
        return run.finish(PipelineState.ROLLED_BACK, message=result.message)

    def release(
        self,
        *,
        load_prod_data: bool = False,
        skip_backup: bool = False,
        skip_migrations: bool = False,
    ) -> PipelineReport:
        """Build, test, publish and deploy in one run."""
        run = _Run("release", heartbeat=self._refresh_locks)
        try:
            with self._lock(self.settings.env):
                state = self._build(run)
                with self._lock(TEST_STORE_LOCK):
                    self._test(run, load_prod_data=load_prod_data)
                self._push(run)
                return self._deploy(
                    run,
                    state.version.tag,
                    skip_backup=skip_backup,
                    skip_migrations=skip_migrations,
                )
        except PipelineError as exc:
            return run.fail(exc)

    def status(self) -> dict[str, Any]:
        """Active release, deployment history and local build state."""
        ledger = self.ledger
        active = ledger.active(self.settings.env)
        local = {
            "built": self.workspace.load_build(),
            "tested": self.workspace.load_tested(),
            "published": self.workspace.load_published(),
        }
        return {
            "environment": self.settings.env,
            "active": active.model_dump(mode="json") if active else None,
            "history": [r.model_dump(mode="json") for r in ledger.history(self.settings.env)],
            "chain_valid": ledger.verify_chain(),
            **{k: (v.version.tag if v else None) for k, v in local.items()},
        }

    def list_backups(self) -> list[BackupSnapshot]:
        manager = self._backup_manager()
        return manager.list_snapshots() if manager else []

    def prune_backups(self, keep: int | None = None) -> list[str]:
        manager = self._backup_manager()
        return manager.prune(keep or self.settings.backup_keep) if manager else []

    @property
    def ledger(self) -> DeploymentLedger:
        if self._ledger is None:
            self._ledger = DeploymentLedger(self.workspace.ledger_path)
        return self._ledger

    def close(self) -> None:
        if self._ledger is not None:
            self._ledger.close()
            self._ledger = None

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _build(self, run: _Run) -> BuildState:
        builder = self._builder()
        with run.stage(PipelineState.BUILDING):
            tagger = VersionTagger(self.repo)
            version, commit = tagger.tag_checkout(
                self._clock(), existing=self.workspace.known_tags(),
            )
            run.report.version = version.tag
            artifacts = builder.build(version, commit)

        with run.stage(PipelineState.VERIFYING):
            verifier = ProvenanceVerifier(self.runtime)
            specs = self.definition.component_map()
            for artifact in artifacts:
                spec = specs[artifact.component]
                result = verifier.verify(
                    artifact.content_ref,
                    expected_commit=commit,
                    expected_source_hash=builder.source_hash(spec),
                )
                if result.degraded:
                    self._gate_artifact(artifact)

        state = BuildState(version=version, commit=commit, artifacts=artifacts)
        self.workspace.save_build(state)
        return state

    def _test(self, run: _Run, *, load_prod_data: bool) -> BuildState:
        state = self._require_build()
        run.report.version = state.version.tag
        suite = self.definition.suite

        with run.stage(PipelineState.TESTING):
            if self.executor is None:
                raise ConfigError("No test suite command configured")
            try:
                runner = TestRunner(
                    self.executor,
                    known_slow=suite.known_slow,
                    schedule=self.settings.tier_parallelism,
                    full_scope=suite.tests or None,
                )
            except ValueError as exc:
                raise ConfigError("Invalid tier parallelism", detail=str(exc)) from exc

            if load_prod_data:
                self._load_prod_data()
            self.executor.prepare(self._test_env(state))

            def record(report: TestRunReport) -> None:
                report.write(self.workspace.reports_dir / TEST_SUMMARY_FILE)
                run.report.tests = report.summary()

            runner.run_or_raise(on_report=record)

        with run.stage(PipelineState.GATING):
            for artifact in state.artifacts:
                self._gate_artifact(artifact)
            for artifact in state.artifacts:
                self._tag(artifact.content_ref, local_image_ref(
                    self.settings.project, artifact.component, TESTED_ALIAS,
                ))
            self.workspace.save_tested(state)
        return state

    def _push(self, run: _Run) -> BuildState:
        state = self._require_build()
        run.report.version = state.version.tag
        with run.stage(PipelineState.PUBLISHING):
            tested = self.workspace.load_tested()
            if tested is None or tested.version.tag != state.version.tag:
                raise PublishFailure(
                    f"Build {state.version.tag} has not passed tests and the content gate",
                )
            publisher = Publisher(
                self.registry,
                namespace=self.settings.registry_namespace,
                project=self.settings.project,
            )
            published = tested.model_copy(update={"artifacts": publisher.publish(tested.artifacts)})
            self.workspace.save_published(published)
        return published

    def _deploy(
        self,
        run: _Run,
        version: str,
        *,
        skip_backup: bool,
        skip_migrations: bool,
    ) -> PipelineReport:
        run.report.version = version
        manifest = self._manifest_for(version)
        deployer = self._deployer()

        with run.stage(PipelineState.BACKING_UP):
            snapshot = self._backup(version, skip_backup=skip_backup)

        attempt = deployer.begin(manifest)
        try:
            with run.stage(PipelineState.DEPLOYING):
                deployer.deploy(
                    manifest,
                    backup=snapshot,
                    skip_migrations=skip_migrations,
                    allow_without_backup=skip_backup or self.store is None,
                    attempt=attempt,
                )
            with run.stage(PipelineState.HEALTH_CHECKING):
                self._health(self._specs(manifest.artifacts)).verify_or_raise()
        except (DeployFailure, HealthCheckFailure) as exc:
            if isinstance(exc, DeployFailure) and not attempt.mutated:
                raise
            return self._auto_rollback(run, deployer, attempt, exc)

        return run.finish(message=f"{version} is live in {self.settings.env}")

    def _auto_rollback(
        self,
        run: _Run,
        deployer: Deployer,
        attempt: DeployAttempt,
        cause: PipelineError,
    ) -> PipelineReport:
        run.report.failure = run.report.stages[-1]
        run.enter(PipelineState.ROLLING_BACK)
        logger.warning("Deploy failed (%s); rolling back", cause)

        result = RollbackManager(deployer, self._backup_manager()).rollback(attempt)
        if result.succeeded:
            result = self._confirm_rollback(result)
        run.report.rollback = result

        if result.succeeded:
            return run.finish(
                PipelineState.ROLLED_BACK,
                exit_code=cause.exit_code,
                message=f"{cause}; rolled back to {result.target_version}",
            )
        failure = RollbackFailure(
            "Rollback failed, manual intervention required",
            detail=result.message,
        )
        logger.error("%s", failure)
        return run.finish(PipelineState.FAILED, exit_code=failure.exit_code, message=str(failure))

    def _confirm_rollback(self, result: RollbackResult) -> RollbackResult:
        """Health-check the release a rollback brought back."""
        if result.record is None:
            return result
        report = self._health(self._specs(result.record.artifacts)).verify()
        if report.healthy:
            return result
        return result.model_copy(update={
            "state": RollbackState.FAILED,
            "partial": True,
            "message": f"{result.target_version} unhealthy after rollback: "
                       f"{', '.join(report.failing())}",
        })

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def _lock(self, name: str) -> Iterator[RunLock]:
        with RunLock(
            self.workspace.locks_dir, name, timeout=self.settings.lock_timeout,
        ) as lock:
            self._locks.append(lock)
            try:
                yield lock
            finally:
                self._locks.remove(lock)

    def _refresh_locks(self) -> None:
        for lock in self._locks:
            lock.refresh()

    def _builder(self) -> Builder:
        return Builder(
            self.runtime,
            self.definition.components,
            project=self.settings.project,
            context_root=self.project_root,
            max_workers=self.settings.build_workers,
        )

    def _gate(self) -> ContentGate:
        spec = self.definition.gate
        return ContentGate(
            spec.deny_markers,
            spec.required_markers,
            ignore_case=spec.ignore_case,
            extensions=spec.extensions,
            components=spec.components,
        )

    def _gate_artifact(self, artifact: Artifact) -> None:
        spec = self.definition.component(artifact.component)
        try:
            self._gate().check(
                artifact.component,
                self.runtime.iter_payload(artifact.content_ref, spec.payload_root),
            )
        except ProviderError as exc:
            raise ContentGateViolation(
                f"Cannot read payload of {artifact.component}", detail=str(exc),
            ) from exc

    def _tag(self, source: str, target: str) -> None:
        try:
            self.runtime.tag(source, target)
        except ProviderError as exc:
            raise PublishFailure(f"Cannot tag {source} as {target}", detail=str(exc)) from exc

    def _deployer(self) -> Deployer:
        return Deployer(
            self.runtime,
            self.registry,
            self.ledger,
            self.definition.components,
            project=self.settings.project,
            environment=self.settings.env,
            migrations=self.migrations,
            gate=self._gate(),
            clock=self._clock,
        )

    def _health(self, specs: list[ComponentSpec]) -> HealthVerifier:
        return HealthVerifier(
            self.probe,
            specs,
            max_wait=self.settings.health_max_wait,
            interval=self.settings.health_interval,
            clock=self._monotonic,
            sleep=self._sleep,
        )

    def _specs(self, components: dict[str, str]) -> list[ComponentSpec]:
        specs = self.definition.component_map()
        return [specs[name] for name in components if name in specs]

    def _backup_manager(self, store: StoreBackup | None = None) -> BackupManager | None:
        store = store or self.store
        if store is None:
            return None
        return BackupManager(
            store,
            self.settings.backup_dir,
            environment=self.settings.env,
            clock=self._clock,
        )

    def _backup(self, version: str, *, skip_backup: bool) -> BackupSnapshot | None:
        if skip_backup:
            logger.warning(
                "Skipping pre-deploy backup of %s: a failed deploy cannot restore data",
                self.settings.env,
            )
            return None
        manager = self._backup_manager()
        if manager is None:
            logger.info("No persistent store configured; nothing to back up")
            return None
        return manager.snapshot(label=f"pre-deploy {version}")

    def _load_prod_data(self) -> None:
        if self.test_store is None:
            raise ConfigError("No test store configured for --load-prod-data")
        manager = self._backup_manager(self.test_store)
        snapshot = manager.latest(environment=PRODUCTION_ENV)
        if snapshot is None:
            raise BackupFailure("No production snapshot to load")
        logger.info("Loading production data from %s into the test store", snapshot.backup_id)
        manager.restore(snapshot.backup_id)

    def _test_env(self, state: BuildState) -> dict[str, str]:
        env = {"SHIPLINE_VERSION_TAG": state.version.tag}
        for artifact in state.artifacts:
            key = artifact.component.upper().replace("-", "_")
            env[f"SHIPLINE_IMAGE_{key}"] = artifact.content_ref
        return env

    def _require_build(self) -> BuildState:
        state = self.workspace.load_build()
        if state is None:
            raise ConfigError("Nothing has been built yet", detail="run 'shipline build' first")
        return state

    def _manifest_for(self, version: str) -> ReleaseManifest:
        """Find what *version* consists of: local publish state, then the
        ledger, then registry coordinates derived from the tag."""
        try:
            parse_tag(version)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc

        published = self.workspace.load_published()
        if published is not None and published.version.tag == version:
            return ReleaseManifest.from_artifacts(published.artifacts)

        for record in reversed(self.ledger.history()):
            if record.version == version:
                return ReleaseManifest.from_record(record)

        if not self.settings.registry_namespace:
            raise ConfigError(
                f"Unknown release {version}", detail="no registry namespace configured",
            )
        coordinates = {
            spec.name: artifact_coordinate(
                self.settings.registry_namespace, self.settings.project, spec.name, version,
            )
            for spec in self.definition.components
        }
        logger.info("No local record of %s; verifying commit from the tag only", version)
        return ReleaseManifest.from_tag(version, coordinates)
