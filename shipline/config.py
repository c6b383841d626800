"""Configuration: defaults, environment profiles, and typed settings.

Values are merged, lowest precedence first::

    defaults -> profile -> .shipline/config.json -> .env -> environment
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from shipline.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_DIR = ".shipline"
DEFAULT_STATE_DIR = "_build"

# All known configuration keys with defaults
_CONFIG_KEYS: dict[str, dict[str, Any]] = {
    "SHIPLINE_ENV": {"default": "development", "description": "Target environment / profile"},
    "SHIPLINE_PROJECT": {"default": "app", "description": "Project name used in image coordinates"},
    "SHIPLINE_REGISTRY_NAMESPACE": {"default": "", "description": "Registry namespace (e.g. Docker Hub user)"},
    "SHIPLINE_STATE_DIR": {"default": DEFAULT_STATE_DIR, "description": "Pipeline state directory"},
    "SHIPLINE_BACKUP_DIR": {"default": "", "description": "Backup directory (defaults under the state dir)"},
    "SHIPLINE_BACKUP_KEEP": {"default": "10", "description": "Snapshots retained by prune"},
    "SHIPLINE_LOG_LEVEL": {"default": "INFO", "description": "Logging level"},
    "SHIPLINE_TIER_PARALLELISM": {"default": "4,2,1", "description": "Test parallelism per tier"},
    "SHIPLINE_HEALTH_MAX_WAIT": {"default": "60", "description": "Seconds to wait for health"},
    "SHIPLINE_HEALTH_INTERVAL": {"default": "2", "description": "Seconds between health polls"},
    "SHIPLINE_LOCK_TIMEOUT": {"default": "3600", "description": "Seconds before a run lock is stale"},
    "SHIPLINE_BUILD_WORKERS": {"default": "2", "description": "Concurrent component builds"},
}

_PROFILES: dict[str, dict[str, str]] = {
    "development": {
        "SHIPLINE_ENV": "development",
        "SHIPLINE_LOG_LEVEL": "DEBUG",
    },
    "production": {
        "SHIPLINE_ENV": "production",
        "SHIPLINE_LOG_LEVEL": "INFO",
        "SHIPLINE_HEALTH_MAX_WAIT": "120",
    },
    "testing": {
        "SHIPLINE_ENV": "testing",
        "SHIPLINE_LOG_LEVEL": "DEBUG",
        "SHIPLINE_HEALTH_MAX_WAIT": "5",
        "SHIPLINE_HEALTH_INTERVAL": "0.1",
    },
}


class PipelineSettings(BaseModel):
    """Typed view of the merged configuration."""

    env: str = "development"
    project: str = "app"
    registry_namespace: str = ""
    state_dir: Path = Path(DEFAULT_STATE_DIR)
    backup_dir: Path | None = None
    backup_keep: int = Field(default=10, ge=1)
    log_level: str = "INFO"
    tier_parallelism: tuple[int, ...] = (4, 2, 1)
    health_max_wait: float = Field(default=60.0, gt=0)
    health_interval: float = Field(default=2.0, gt=0)
    lock_timeout: float = Field(default=3600.0, gt=0)
    build_workers: int = Field(default=2, ge=1)

    @field_validator("tier_parallelism", mode="before")
    @classmethod
    def _split_parallelism(cls, value: Any) -> Any:
        if isinstance(value, str):
            return tuple(int(part) for part in value.split(",") if part.strip())
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    def resolve(self, project_root: str | Path) -> PipelineSettings:
        """Return a copy with relative directories anchored at *project_root*."""
        root = Path(project_root)
        state_dir = self.state_dir if self.state_dir.is_absolute() else root / self.state_dir
        backup_dir = self.backup_dir or state_dir / "backups"
        if not backup_dir.is_absolute():
            backup_dir = root / backup_dir
        return self.model_copy(update={"state_dir": state_dir, "backup_dir": backup_dir})


class ConfigManager:
    """Load pipeline configuration for a project checkout."""

    def generate_env_template(self, project_path: str | Path) -> Path:
        """Create .env.example with all config keys.

        Returns the path to the generated file.
        """
        root = Path(project_path)
        env_path = root / ".env.example"

        lines = ["# shipline configuration template", "# Copy to .env and fill in values", ""]
        for key, info in _CONFIG_KEYS.items():
            lines.append(f"# {info['description']}")
            lines.append(f"{key}={info['default']}")
            lines.append("")

        env_path.write_text("\n".join(lines), encoding="utf-8")
        return env_path

    def load_config(
        self,
        project_path: str | Path,
        *,
        env_name: str | None = None,
    ) -> dict[str, str]:
        """Load merged config as a flat dict of strings."""
        root = Path(project_path)
        config: dict[str, str] = {key: str(info["default"]) for key, info in _CONFIG_KEYS.items()}

        name = env_name or os.environ.get("SHIPLINE_ENV", config["SHIPLINE_ENV"])
        config.update(_PROFILES.get(name, {}))
        config["SHIPLINE_ENV"] = name

        config_json = root / CONFIG_DIR / "config.json"
        if config_json.is_file():
            try:
                data = json.loads(config_json.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as exc:
                raise ConfigError(f"Cannot read {config_json}", detail=str(exc)) from exc
            for k, v in data.items():
                config[k] = str(v)

        env_file = root / ".env"
        if env_file.is_file():
            for line in env_file.read_text(encoding="utf-8").splitlines():
                line = line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                k, v = line.split("=", 1)
                config[k.strip()] = v.strip().strip('"').strip("'")

        for key in _CONFIG_KEYS:
            env_val = os.environ.get(key)
            if env_val is not None:
                config[key] = env_val

        # An explicit environment (e.g. ``deploy --env``) beats every source.
        if env_name:
            config["SHIPLINE_ENV"] = env_name

        return config

    def load_settings(
        self,
        project_path: str | Path,
        *,
        env_name: str | None = None,
    ) -> PipelineSettings:
        """Load and validate settings, anchored at *project_path*.

        Raises
        ------
        ConfigError
            If a value cannot be converted to its typed form.
        """
        config = self.load_config(project_path, env_name=env_name)
        try:
            settings = PipelineSettings(
                env=config["SHIPLINE_ENV"],
                project=config["SHIPLINE_PROJECT"],
                registry_namespace=config["SHIPLINE_REGISTRY_NAMESPACE"],
                state_dir=Path(config["SHIPLINE_STATE_DIR"]),
                backup_dir=Path(config["SHIPLINE_BACKUP_DIR"]) if config["SHIPLINE_BACKUP_DIR"] else None,
                backup_keep=int(config["SHIPLINE_BACKUP_KEEP"]),
                log_level=config["SHIPLINE_LOG_LEVEL"],
                tier_parallelism=config["SHIPLINE_TIER_PARALLELISM"],
                health_max_wait=float(config["SHIPLINE_HEALTH_MAX_WAIT"]),
                health_interval=float(config["SHIPLINE_HEALTH_INTERVAL"]),
                lock_timeout=float(config["SHIPLINE_LOCK_TIMEOUT"]),
                build_workers=int(config["SHIPLINE_BUILD_WORKERS"]),
            )
        except (ValidationError, ValueError) as exc:
            raise ConfigError("Invalid configuration", detail=str(exc)) from exc
        return settings.resolve(project_path)
