"""Abstract interfaces for the pipeline's external collaborators.

The orchestrator depends only on these; concrete providers wrap the
Docker CLI, HTTP endpoints, store dump tools, and test commands.
"""

from __future__ import annotations

import abc
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, Sequence

from shipline.definition import ComponentSpec

if TYPE_CHECKING:
    from shipline.testrun.models import TestResult


class ProviderError(Exception):
    """Raised when an external tool fails.

    Parameters
    ----------
    message:
        Human-readable summary.
    command:
        The command line that failed, if any.
    stderr:
        Captured error output, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] = (),
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = list(command)
        self.stderr = stderr

    def __str__(self) -> str:
        text = super().__str__()
        if self.stderr:
            text = f"{text}: {self.stderr.strip()}"
        return text


class ContainerRuntime(abc.ABC):
    """Build, inspect, start and stop container images."""

    @abc.abstractmethod
    def build(
        self,
        spec: ComponentSpec,
        image_ref: str,
        *,
        context_root: Path,
        build_args: dict[str, str],
        labels: dict[str, str],
        no_cache: bool = False,
    ) -> None:
        """Build *spec* into the local image *image_ref*."""

    @abc.abstractmethod
    def tag(self, source_ref: str, target_ref: str) -> None:
        """Add *target_ref* as another name for *source_ref*."""

    @abc.abstractmethod
    def labels(self, image_ref: str) -> dict[str, str]:
        """Return the image's labels (empty if none)."""

    @abc.abstractmethod
    def read_file(self, image_ref: str, path: str) -> bytes | None:
        """Return the bytes of *path* inside the image, or *None* if absent."""

    @abc.abstractmethod
    def iter_payload(self, image_ref: str, root: str) -> Iterator[tuple[str, bytes]]:
        """Yield ``(path, content)`` for every regular file under *root*."""

    @abc.abstractmethod
    def start(self, name: str, image_ref: str, spec: ComponentSpec) -> None:
        """Start a detached container *name* from *image_ref*."""

    @abc.abstractmethod
    def stop(self, name: str) -> None:
        """Stop and remove container *name*; a missing container is not an error."""

    @abc.abstractmethod
    def running_image(self, name: str) -> str | None:
        """Return the image reference container *name* runs, or *None*."""


class ArtifactRegistry(abc.ABC):
    """Shared registry the pipeline publishes to and deploys from."""

    @abc.abstractmethod
    def push(self, image_ref: str, coordinate: str) -> None:
        """Publish local *image_ref* as *coordinate*, overwriting if present."""

    @abc.abstractmethod
    def pull(self, coordinate: str) -> str:
        """Fetch *coordinate* and return the local image reference."""


class StoreBackup(abc.ABC):
    """Dump/restore primitives for the persistent store."""

    @abc.abstractmethod
    def dump(self, destination: Path) -> str:
        """Write a full copy of the store into *destination*.

        Returns a reference describing what was dumped.
        """

    @abc.abstractmethod
    def restore(self, source: Path) -> None:
        """Replace the store's contents with the dump in *source*."""


class MigrationRunner(abc.ABC):
    """Applies pending data migrations."""

    @abc.abstractmethod
    def pending(self) -> bool:
        """Return *True* if there is anything to apply."""

    @abc.abstractmethod
    def apply(self) -> None:
        """Apply pending migrations; raise :class:`ProviderError` on failure."""


class HealthProbe(abc.ABC):
    """A liveness signal for one running component."""

    @abc.abstractmethod
    def is_healthy(self, spec: ComponentSpec) -> bool:
        """Return *True* if the component reports healthy right now."""


class TestExecutor(abc.ABC):
    """Runs tests and reports structured per-test results."""

    __test__ = False

    def prepare(self, env: dict[str, str]) -> None:
        """Receive environment variables for subsequent runs."""

    @abc.abstractmethod
    def run(self, test_ids: Sequence[str] | None, parallelism: int) -> list[TestResult]:
        """Run *test_ids* (or the full suite when *None*).

        Must block until every selected test has reported a result.
        """
