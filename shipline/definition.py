"""Pipeline definition — what to build, test, gate, back up, and deploy.

Read from ``.shipline/pipeline.json`` in the project root::

    {
      "components": [
        {"name": "backend", "context": ".", "dockerfile": "backend/Dockerfile",
         "critical_path": "backend/src", "health_url": "http://localhost:50012/health"},
        {"name": "frontend", "context": ".", "dockerfile": "frontend/Dockerfile",
         "critical_path": "frontend/src", "no_cache": true,
         "payload_root": "/usr/share/nginx/html"}
      ],
      "suite": {"command": ["cargo", "nextest", "run", "--test-threads",
                            "{parallelism}", "{tests}"],
                "report": "target/nextest/ci/junit.xml",
                "known_slow": ["venue_api_tests::test_get_venue_not_found"]},
      "gate": {"deny_markers": ["Search People"], "ignore_case": true},
      "store": {"kind": "directory", "path": "/var/lib/app/data"},
      "migrations": {"command": ["./migrate", "--apply"], "directory": "migrations/files"}
    }
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

from shipline.config import CONFIG_DIR
from shipline.errors import ConfigError

logger = logging.getLogger(__name__)

DEFINITION_FILE = "pipeline.json"


class ComponentSpec(BaseModel):
    """How to build, gate, run, and health-check one component."""

    name: str
    context: str = "."
    dockerfile: str = "Dockerfile"
    critical_path: str
    no_cache: bool = False
    payload_root: str = "/"
    health_url: str = ""
    container_name: str = ""
    ports: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    build_args: dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _simple_name(cls, value: str) -> str:
        if not value or not value.replace("_", "").replace("-", "").isalnum():
            raise ValueError(f"component name must be alphanumeric: {value!r}")
        return value

    def container(self, project: str) -> str:
        """Name of the running container for this component."""
        return self.container_name or f"{project}-{self.name}"


class SuiteSpec(BaseModel):
    """The test suite command and its structured report.

    ``command`` may contain ``{parallelism}`` and ``{report}`` placeholders,
    and a standalone ``{tests}`` element that expands to the selected test
    ids (or disappears when the full suite runs).
    """

    command: list[str] = Field(default_factory=list)
    report: str = "_build/reports/junit.xml"
    cwd: str = "."
    known_slow: list[str] = Field(default_factory=list)
    tests: list[str] = Field(default_factory=list)


class GateSpec(BaseModel):
    """Content markers checked in every artifact payload."""

    deny_markers: list[str] = Field(default_factory=list)
    required_markers: list[str] = Field(default_factory=list)
    ignore_case: bool = False
    extensions: list[str] = Field(default_factory=list)
    components: list[str] = Field(default_factory=list)


class StoreSpec(BaseModel):
    """The persistent store and how to dump/restore it."""

    kind: str = "directory"
    path: str = ""
    test_path: str = ""
    dump_command: list[str] = Field(default_factory=list)
    restore_command: list[str] = Field(default_factory=list)

    @field_validator("kind")
    @classmethod
    def _known_kind(cls, value: str) -> str:
        if value not in ("directory", "command", "none"):
            raise ValueError(f"unknown store kind: {value!r}")
        return value


class MigrationSpec(BaseModel):
    """Command that applies pending data migrations."""

    command: list[str] = Field(default_factory=list)
    directory: str = ""


class PipelineDefinition(BaseModel):
    """The complete pipeline definition for one project."""

    components: list[ComponentSpec] = Field(default_factory=list)
    suite: SuiteSpec = Field(default_factory=SuiteSpec)
    gate: GateSpec = Field(default_factory=GateSpec)
    store: StoreSpec = Field(default_factory=StoreSpec)
    migrations: MigrationSpec = Field(default_factory=MigrationSpec)

    @field_validator("components")
    @classmethod
    def _unique_components(cls, value: list[ComponentSpec]) -> list[ComponentSpec]:
        names = [c.name for c in value]
        if len(names) != len(set(names)):
            raise ValueError("component names must be unique")
        return value

    def component(self, name: str) -> ComponentSpec:
        for spec in self.components:
            if spec.name == name:
                return spec
        raise KeyError(name)

    def component_map(self) -> dict[str, ComponentSpec]:
        return {c.name: c for c in self.components}


def load_pipeline_definition(project_root: str | Path) -> PipelineDefinition:
    """Load ``.shipline/pipeline.json`` from *project_root*.

    Raises
    ------
    ConfigError
        If the file is missing, unreadable, or fails validation.
    """
    path = Path(project_root) / CONFIG_DIR / DEFINITION_FILE
    if not path.is_file():
        raise ConfigError("Pipeline definition not found", detail=str(path))

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        definition = PipelineDefinition.model_validate(data)
    except (json.JSONDecodeError, OSError) as exc:
        raise ConfigError(f"Cannot read {path}", detail=str(exc)) from exc
    except ValidationError as exc:
        raise ConfigError(f"Invalid pipeline definition {path}", detail=str(exc)) from exc

    if not definition.components:
        raise ConfigError("Pipeline definition declares no components", detail=str(path))

    logger.debug(
        "Loaded pipeline definition with components: %s",
        ", ".join(c.name for c in definition.components),
    )
    return definition
