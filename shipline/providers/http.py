"""Liveness probes: HTTP health endpoints, falling back to container state."""

from __future__ import annotations

import logging
import urllib.error
import urllib.request

from shipline.definition import ComponentSpec
from shipline.providers.base import ContainerRuntime, HealthProbe

logger = logging.getLogger(__name__)


class ServiceHealthProbe(HealthProbe):
    """Probe a component's ``health_url``, or its container when it has none.

    Any status below 400 counts as healthy.  Components without a
    health URL are healthy while their container is running.

    Parameters
    ----------
    runtime:
        Used for components that expose no HTTP health endpoint.
    project:
        Project name, needed to derive default container names.
    timeout:
        Per-request timeout in seconds.
    """

    def __init__(
        self,
        runtime: ContainerRuntime | None = None,
        *,
        project: str = "app",
        timeout: float = 2.0,
    ) -> None:
        self.runtime = runtime
        self.project = project
        self.timeout = timeout

    def is_healthy(self, spec: ComponentSpec) -> bool:
        if spec.health_url:
            return self._http_ok(spec.health_url)
        if self.runtime is not None:
            return self.runtime.running_image(spec.container(self.project)) is not None
        return False

    def _http_ok(self, url: str) -> bool:
        try:
            req = urllib.request.Request(url)
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                return resp.status < 400
        except (urllib.error.URLError, OSError, TimeoutError, ValueError) as exc:
            logger.debug("Health probe %s failed: %s", url, exc)
            return False
