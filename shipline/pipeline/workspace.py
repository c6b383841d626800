"""Pipeline state directory: build, test and publish results between commands."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from shipline.release.models import Artifact, ReleaseVersion

logger = logging.getLogger(__name__)

BUILD_FILE = "build-version.json"
TESTED_FILE = "tested.json"
PUBLISHED_FILE = "published.json"
TAGS_FILE = "tags.json"
LEDGER_FILE = "ledger.db"


class BuildState(BaseModel):
    """The artifacts of one build, as handed from stage to stage."""

    version: ReleaseVersion
    commit: str
    artifacts: list[Artifact] = Field(default_factory=list)

    def artifact(self, component: str) -> Artifact:
        for artifact in self.artifacts:
            if artifact.component == component:
                return artifact
        raise KeyError(component)


class Workspace:
    """Files under the pipeline state directory (``_build/`` by default).

    Parameters
    ----------
    state_dir:
        The state directory; created on first write.
    """

    def __init__(self, state_dir: str | Path) -> None:
        self.state_dir = Path(state_dir)

    @property
    def reports_dir(self) -> Path:
        return self.state_dir / "reports"

    @property
    def locks_dir(self) -> Path:
        return self.state_dir / "locks"

    @property
    def ledger_path(self) -> Path:
        return self.state_dir / LEDGER_FILE

    # -- build state ----------------------------------------------------------

    def save_build(self, state: BuildState) -> Path:
        self._record_tag(state.version.tag)
        # A new build invalidates earlier test and publish results.
        (self.state_dir / TESTED_FILE).unlink(missing_ok=True)
        (self.state_dir / PUBLISHED_FILE).unlink(missing_ok=True)
        return self._write(BUILD_FILE, state)

    def load_build(self) -> BuildState | None:
        return self._read(BUILD_FILE)

    def save_tested(self, state: BuildState) -> Path:
        return self._write(TESTED_FILE, state)

    def load_tested(self) -> BuildState | None:
        return self._read(TESTED_FILE)

    def save_published(self, state: BuildState) -> Path:
        return self._write(PUBLISHED_FILE, state)

    def load_published(self) -> BuildState | None:
        return self._read(PUBLISHED_FILE)

    def known_tags(self) -> set[str]:
        """Every tag this workspace has built."""
        path = self.state_dir / TAGS_FILE
        if not path.is_file():
            return set()
        try:
            return set(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, OSError, TypeError):
            logger.warning("Ignoring unreadable %s", path)
            return set()

    # -- internals ------------------------------------------------------------

    def _record_tag(self, tag: str) -> None:
        tags = self.known_tags()
        tags.add(tag)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        (self.state_dir / TAGS_FILE).write_text(json.dumps(sorted(tags), indent=2), encoding="utf-8")

    def _write(self, name: str, state: BuildState) -> Path:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.state_dir / name
        path.write_text(state.model_dump_json(indent=2), encoding="utf-8")
        logger.debug("Wrote %s", path)
        return path

    def _read(self, name: str) -> BuildState | None:
        path = self.state_dir / name
        if not path.is_file():
            return None
        try:
            return BuildState.model_validate_json(path.read_text(encoding="utf-8"))
        except (ValidationError, OSError) as exc:
            logger.warning("Ignoring unreadable %s: %s", path, exc)
            return None
