"""Docker CLI providers for the container runtime and the registry.

All docker operations use :func:`subprocess.run`; no docker SDK dependency.
"""

from __future__ import annotations

import io
import json
import logging
import subprocess
import tarfile
from pathlib import Path
from typing import Iterator

from shipline.definition import ComponentSpec
from shipline.providers.base import ArtifactRegistry, ContainerRuntime, ProviderError

logger = logging.getLogger(__name__)


def _run_docker(
    *args: str,
    cwd: str | Path | None = None,
    check: bool = True,
    binary: bool = False,
) -> subprocess.CompletedProcess:
    """Execute a docker command via subprocess and return the result.

    Parameters
    ----------
    *args:
        Arguments passed after ``docker``.
    cwd:
        Working directory for the command.
    check:
        If *True*, raise :class:`ProviderError` on non-zero exit.
    binary:
        Capture stdout as bytes instead of text.
    """
    cmd = ["docker", *args]
    logger.debug("docker %s", " ".join(args))
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=not binary,
        )
    except FileNotFoundError as exc:
        raise ProviderError("docker executable not found", command=cmd) from exc
    if check and result.returncode != 0:
        stderr = result.stderr if isinstance(result.stderr, str) else result.stderr.decode("utf-8", "replace")
        raise ProviderError(
            f"docker {args[0]} failed (rc={result.returncode})",
            command=cmd,
            stderr=stderr,
        )
    return result


class DockerRuntime(ContainerRuntime):
    """:class:`ContainerRuntime` backed by the ``docker`` CLI."""

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
        args = ["build", "-f", spec.dockerfile, "-t", image_ref]
        if no_cache:
            args += ["--no-cache", "--pull"]
        for key, value in sorted({**spec.build_args, **build_args}.items()):
            args += ["--build-arg", f"{key}={value}"]
        for key, value in sorted(labels.items()):
            args += ["--label", f"{key}={value}"]
        args.append(spec.context)
        _run_docker(*args, cwd=context_root)
        logger.info("Built image %s", image_ref)

    def tag(self, source_ref: str, target_ref: str) -> None:
        _run_docker("tag", source_ref, target_ref)

    def labels(self, image_ref: str) -> dict[str, str]:
        result = _run_docker(
            "image", "inspect", "--format", "{{json .Config.Labels}}", image_ref,
        )
        try:
            data = json.loads(result.stdout.strip() or "null")
        except json.JSONDecodeError:
            return {}
        return dict(data or {})

    def _export(self, image_ref: str, path: str) -> tarfile.TarFile | None:
        """Copy *path* out of a throwaway container as a tar archive."""
        created = _run_docker("create", image_ref)
        container_id = created.stdout.strip()
        try:
            result = _run_docker("cp", f"{container_id}:{path}", "-", check=False, binary=True)
        finally:
            _run_docker("rm", "-f", container_id, check=False)
        if result.returncode != 0:
            return None
        return tarfile.open(fileobj=io.BytesIO(result.stdout), mode="r:")

    def read_file(self, image_ref: str, path: str) -> bytes | None:
        archive = self._export(image_ref, path)
        if archive is None:
            return None
        with archive:
            for member in archive.getmembers():
                if member.isfile():
                    handle = archive.extractfile(member)
                    return handle.read() if handle is not None else None
        return None

    def iter_payload(self, image_ref: str, root: str) -> Iterator[tuple[str, bytes]]:
        archive = self._export(image_ref, root)
        if archive is None:
            raise ProviderError(f"Payload root {root} not found in {image_ref}")
        with archive:
            for member in archive.getmembers():
                if not member.isfile():
                    continue
                handle = archive.extractfile(member)
                if handle is not None:
                    yield member.name, handle.read()

    def start(self, name: str, image_ref: str, spec: ComponentSpec) -> None:
        args = ["run", "-d", "--name", name, "--restart", "unless-stopped"]
        for key, value in sorted(spec.env.items()):
            args += ["-e", f"{key}={value}"]
        for mapping in spec.ports:
            args += ["-p", mapping]
        args.append(image_ref)
        _run_docker(*args)
        logger.info("Started container %s from %s", name, image_ref)

    def stop(self, name: str) -> None:
        _run_docker("stop", name, check=False)
        _run_docker("rm", "-f", name, check=False)
        logger.info("Stopped container %s", name)

    def running_image(self, name: str) -> str | None:
        result = _run_docker(
            "inspect", "--format", "{{.State.Running}} {{.Config.Image}}", name,
            check=False,
        )
        if result.returncode != 0:
            return None
        running, _, image = result.stdout.strip().partition(" ")
        return image if running == "true" else None


class DockerRegistry(ArtifactRegistry):
    """:class:`ArtifactRegistry` that pushes and pulls through ``docker``."""

    def push(self, image_ref: str, coordinate: str) -> None:
        _run_docker("tag", image_ref, coordinate)
        _run_docker("push", coordinate)
        logger.info("Pushed %s", coordinate)

    def pull(self, coordinate: str) -> str:
        _run_docker("pull", coordinate)
        logger.info("Pulled %s", coordinate)
        return coordinate
