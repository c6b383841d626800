"""Deterministic fakes for the pipeline's external collaborators."""

from __future__ import annotations

import json
import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator, Sequence

from shipline.config import PipelineSettings
from shipline.definition import ComponentSpec, GateSpec, PipelineDefinition, SuiteSpec
from shipline.providers.base import (
    ArtifactRegistry,
    ContainerRuntime,
    HealthProbe,
    MigrationRunner,
    ProviderError,
    StoreBackup,
    TestExecutor,
)
from shipline.release.provenance import PROVENANCE_PATH
from shipline.testrun.models import TestResult


# ── git ──────────────────────────────────────────────────────────────────────

def _configure_git_user(path: Path) -> None:
    subprocess.run(["git", "config", "user.email", "ci@example.com"], cwd=path, capture_output=True)
    subprocess.run(["git", "config", "user.name", "CI"], cwd=path, capture_output=True)


def init_git_repo(path: Path) -> Path:
    """Create a git repository with backend and frontend sources committed."""
    path.mkdir(parents=True, exist_ok=True)
    subprocess.run(["git", "init"], cwd=path, capture_output=True)
    _configure_git_user(path)

    (path / "backend" / "src").mkdir(parents=True)
    (path / "backend" / "src" / "main.rs").write_text("fn main() {}\n", encoding="utf-8")
    (path / "frontend" / "src").mkdir(parents=True)
    (path / "frontend" / "src" / "app.rs").write_text("// Players page\n", encoding="utf-8")
    (path / ".gitignore").write_text("_build/\n", encoding="utf-8")
    subprocess.run(["git", "add", "."], cwd=path, capture_output=True)
    subprocess.run(["git", "commit", "-m", "Initial commit"], cwd=path, capture_output=True)
    return path


def commit_all(path: Path, message: str = "change") -> None:
    subprocess.run(["git", "add", "."], cwd=path, capture_output=True)
    subprocess.run(["git", "commit", "-m", message], cwd=path, capture_output=True)


def head_commit(path: Path) -> str:
    result = subprocess.run(
        ["git", "rev-parse", "HEAD"], cwd=path, capture_output=True, text=True,
    )
    return result.stdout.strip()


# ── containers and registry ──────────────────────────────────────────────────

class FakeRuntime(ContainerRuntime):
    """In-memory images and containers.

    A build writes ``/build-info.json`` from its build args (unless
    ``embed_provenance`` is off) plus the files in ``payloads[component]``.
    """

    def __init__(self) -> None:
        self.images: dict[str, dict] = {}
        self.containers: dict[str, str] = {}
        self.payloads: dict[str, dict[str, bytes]] = {}
        self.embed_provenance = True
        self.fail_builds: set[str] = set()
        self.fail_start: set[str] = set()
        self.builds: list[tuple[str, bool]] = []
        self.events: list[tuple[str, str]] = []

    def build(self, spec, image_ref, *, context_root, build_args, labels, no_cache=False):
        self.builds.append((spec.name, no_cache))
        if spec.name in self.fail_builds:
            raise ProviderError(f"build of {spec.name} failed")
        files = dict(self.payloads.get(spec.name, {}))
        if self.embed_provenance:
            files[PROVENANCE_PATH] = json.dumps({
                "git_commit": build_args["GIT_COMMIT"],
                "build_date": build_args["BUILD_DATE"],
                "source_hash": build_args["SOURCE_HASH"],
            }).encode("utf-8")
        self.images[image_ref] = {
            "files": files,
            "labels": dict(labels) if self.embed_provenance else {},
        }

    def tag(self, source_ref, target_ref):
        self.images[target_ref] = self.images[source_ref]

    def labels(self, image_ref):
        return dict(self._image(image_ref)["labels"])

    def read_file(self, image_ref, path):
        return self._image(image_ref)["files"].get(path)

    def iter_payload(self, image_ref, root) -> Iterator[tuple[str, bytes]]:
        prefix = root.rstrip("/") + "/"
        for path, content in self._image(image_ref)["files"].items():
            if path == PROVENANCE_PATH:
                continue
            if root == "/" or path.startswith(prefix):
                yield path, content

    def start(self, name, image_ref, spec):
        self.events.append(("start", name))
        if name in self.fail_start:
            raise ProviderError(f"cannot start {name}")
        self._image(image_ref)
        self.containers[name] = image_ref

    def stop(self, name):
        self.events.append(("stop", name))
        self.containers.pop(name, None)

    def running_image(self, name):
        return self.containers.get(name)

    def _image(self, image_ref: str) -> dict:
        if image_ref not in self.images:
            raise ProviderError(f"no such image {image_ref}")
        return self.images[image_ref]


class FakeRegistry(ArtifactRegistry):
    """Registry backed by a dict, sharing images with a :class:`FakeRuntime`."""

    def __init__(self, runtime: FakeRuntime) -> None:
        self.runtime = runtime
        self.published: dict[str, dict] = {}
        self.fail_push: set[str] = set()
        self.pushes: list[str] = []

    def push(self, image_ref, coordinate):
        if any(part in coordinate for part in self.fail_push):
            raise ProviderError(f"push of {coordinate} denied")
        self.pushes.append(coordinate)
        self.published[coordinate] = self.runtime.images[image_ref]

    def pull(self, coordinate):
        if coordinate not in self.published:
            raise ProviderError(f"manifest unknown: {coordinate}")
        self.runtime.images[coordinate] = self.published[coordinate]
        return coordinate


class FakeProbe(HealthProbe):
    """Healthy while running an image not listed in ``bad_images``."""

    def __init__(self, runtime: FakeRuntime, project: str = "app") -> None:
        self.runtime = runtime
        self.project = project
        self.bad_images: set[str] = set()
        self.calls = 0

    def is_healthy(self, spec):
        self.calls += 1
        image = self.runtime.running_image(spec.container(self.project))
        return image is not None and not any(bad in image for bad in self.bad_images)


# ── tests, store, migrations ─────────────────────────────────────────────────

class FakeExecutor(TestExecutor):
    """Decides each test's result with ``verdict(test_id, parallelism, isolated)``.

    ``calls`` records every invocation as ``(test_ids, parallelism)``.
    """

    def __init__(
        self,
        suite: Sequence[str],
        verdict: Callable[[str, int, bool], bool] | None = None,
    ) -> None:
        self.suite = list(suite)
        self.verdict = verdict or (lambda test_id, parallelism, isolated: True)
        self.calls: list[tuple[tuple[str, ...] | None, int]] = []
        self.env: dict[str, str] = {}

    def prepare(self, env):
        self.env.update(env)

    def run(self, test_ids, parallelism):
        self.calls.append((tuple(test_ids) if test_ids is not None else None, parallelism))
        ids = self.suite if test_ids is None else list(test_ids)
        isolated = test_ids is not None and len(test_ids) == 1
        return [
            TestResult(test_id=t, passed=self.verdict(t, parallelism, isolated))
            for t in ids
        ]


class FakeStore(StoreBackup):
    """A store holding a dict, dumped to ``dump.json``."""

    def __init__(self, data: dict | None = None) -> None:
        self.data = dict(data or {})
        self.fail_dump = False
        self.restores = 0

    def dump(self, destination: Path) -> str:
        if self.fail_dump:
            raise ProviderError("dump failed")
        destination.mkdir(parents=True, exist_ok=True)
        (destination / "dump.json").write_text(json.dumps(self.data), encoding="utf-8")
        return "fake-store"

    def restore(self, source: Path) -> None:
        self.data = json.loads((source / "dump.json").read_text(encoding="utf-8"))
        self.restores += 1


class FakeMigrations(MigrationRunner):
    """Applies ``schema += 1`` to a :class:`FakeStore`."""

    def __init__(self, store: FakeStore, *, pending: bool = True, fail: bool = False) -> None:
        self.store = store
        self.is_pending = pending
        self.fail = fail
        self.applied = 0

    def pending(self):
        return self.is_pending

    def apply(self):
        self.applied += 1
        self.store.data["schema"] = self.store.data.get("schema", 0) + 1
        if self.fail:
            raise ProviderError("migration 0042 failed")


# ── clocks ───────────────────────────────────────────────────────────────────

class FakeClock:
    """Wall clock that advances one second per call."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 2, 5, 16, 36, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + timedelta(seconds=1)
        return current


class FakeTimer:
    """Monotonic clock whose ``sleep`` just advances time."""

    def __init__(self) -> None:
        self.t = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.t

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += seconds


# ── pipeline wiring ──────────────────────────────────────────────────────────

def make_definition(**overrides) -> PipelineDefinition:
    data = dict(
        components=[
            ComponentSpec(name="backend", critical_path="backend/src"),
            ComponentSpec(
                name="frontend",
                critical_path="frontend/src",
                no_cache=True,
                payload_root="/usr/share/nginx/html",
            ),
        ],
        suite=SuiteSpec(tests=[], known_slow=[]),
        gate=GateSpec(deny_markers=["Search People"]),
    )
    data.update(overrides)
    return PipelineDefinition(**data)


def make_settings(root: Path, **overrides) -> PipelineSettings:
    data = dict(
        env="production",
        project="app",
        registry_namespace="acme",
        health_max_wait=10.0,
        health_interval=1.0,
    )
    data.update(overrides)
    return PipelineSettings(**data).resolve(root)


FRONTEND_OK = {"/usr/share/nginx/html/index.html": b"<h1>Players</h1>"}
