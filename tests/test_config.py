"""Tests for configuration loading and the pipeline definition."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from shipline.config import ConfigManager, PipelineSettings
from shipline.definition import ComponentSpec, PipelineDefinition, load_pipeline_definition
from shipline.errors import ConfigError

DEFINITION = {
    "components": [
        {"name": "backend", "critical_path": "backend/src",
         "health_url": "http://localhost:50012/health"},
        {"name": "frontend", "critical_path": "frontend/src", "no_cache": True,
         "payload_root": "/usr/share/nginx/html"},
    ],
    "suite": {"command": ["cargo", "nextest", "run"],
              "known_slow": ["venue_api_tests::test_get_venue_not_found"]},
    "gate": {"deny_markers": ["Search People"]},
    "store": {"kind": "directory", "path": "/var/lib/app/data"},
}


def _write_definition(root: Path, data: dict | str) -> Path:
    path = root / ".shipline" / "pipeline.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(data if isinstance(data, str) else json.dumps(data), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("SHIPLINE_"):
            monkeypatch.delenv(key, raising=False)


# ── ConfigManager ────────────────────────────────────────────────────────────

class TestConfigManager:

    def test_defaults(self, tmp_path):
        settings = ConfigManager().load_settings(tmp_path)
        assert settings.env == "development"
        assert settings.tier_parallelism == (4, 2, 1)
        assert settings.state_dir == tmp_path / "_build"
        assert settings.backup_dir == tmp_path / "_build" / "backups"

    def test_profile_applied(self, tmp_path):
        settings = ConfigManager().load_settings(tmp_path, env_name="production")
        assert settings.env == "production"
        assert settings.health_max_wait == 120.0

    def test_config_json_overrides_profile(self, tmp_path):
        cfg = tmp_path / ".shipline" / "config.json"
        cfg.parent.mkdir()
        cfg.write_text(json.dumps({"SHIPLINE_REGISTRY_NAMESPACE": "acme",
                                   "SHIPLINE_HEALTH_MAX_WAIT": 30}))
        settings = ConfigManager().load_settings(tmp_path, env_name="production")
        assert settings.registry_namespace == "acme"
        assert settings.health_max_wait == 30.0

    def test_dotenv_and_environment(self, tmp_path, monkeypatch):
        (tmp_path / ".env").write_text(
            "# comment\nSHIPLINE_PROJECT='players'\nSHIPLINE_BACKUP_KEEP=3\n",
        )
        monkeypatch.setenv("SHIPLINE_BACKUP_KEEP", "5")
        settings = ConfigManager().load_settings(tmp_path)
        assert settings.project == "players"
        assert settings.backup_keep == 5

    def test_explicit_env_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHIPLINE_ENV", "testing")
        assert ConfigManager().load_settings(tmp_path, env_name="staging").env == "staging"
        assert ConfigManager().load_settings(tmp_path).env == "testing"

    def test_parallelism_string(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHIPLINE_TIER_PARALLELISM", "8,3,1")
        assert ConfigManager().load_settings(tmp_path).tier_parallelism == (8, 3, 1)

    def test_invalid_value(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHIPLINE_HEALTH_INTERVAL", "soon")
        with pytest.raises(ConfigError) as info:
            ConfigManager().load_settings(tmp_path)
        assert info.value.exit_code == 2

    def test_unreadable_config_json(self, tmp_path):
        cfg = tmp_path / ".shipline" / "config.json"
        cfg.parent.mkdir()
        cfg.write_text("{")
        with pytest.raises(ConfigError):
            ConfigManager().load_config(tmp_path)

    def test_env_template(self, tmp_path):
        path = ConfigManager().generate_env_template(tmp_path)
        text = path.read_text()
        assert "SHIPLINE_REGISTRY_NAMESPACE=" in text
        assert "SHIPLINE_TIER_PARALLELISM=4,2,1" in text

    def test_absolute_dirs_kept(self, tmp_path):
        settings = PipelineSettings(
            state_dir=tmp_path / "state", backup_dir=tmp_path / "bk",
        ).resolve("/elsewhere")
        assert settings.state_dir == tmp_path / "state"
        assert settings.backup_dir == tmp_path / "bk"


# ── Pipeline definition ──────────────────────────────────────────────────────

class TestPipelineDefinition:

    def test_load(self, tmp_path):
        _write_definition(tmp_path, DEFINITION)
        definition = load_pipeline_definition(tmp_path)
        assert [c.name for c in definition.components] == ["backend", "frontend"]
        assert definition.component("frontend").no_cache
        assert definition.suite.known_slow == ["venue_api_tests::test_get_venue_not_found"]
        assert definition.gate.deny_markers == ["Search People"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_pipeline_definition(tmp_path)

    def test_invalid_json(self, tmp_path):
        _write_definition(tmp_path, "{")
        with pytest.raises(ConfigError):
            load_pipeline_definition(tmp_path)

    def test_no_components(self, tmp_path):
        _write_definition(tmp_path, {"components": []})
        with pytest.raises(ConfigError, match="no components"):
            load_pipeline_definition(tmp_path)

    def test_duplicate_components(self, tmp_path):
        dup = {"components": [DEFINITION["components"][0], DEFINITION["components"][0]]}
        _write_definition(tmp_path, dup)
        with pytest.raises(ConfigError):
            load_pipeline_definition(tmp_path)

    def test_unknown_store_kind(self, tmp_path):
        _write_definition(tmp_path, {**DEFINITION, "store": {"kind": "tape"}})
        with pytest.raises(ConfigError):
            load_pipeline_definition(tmp_path)

    def test_component_names(self):
        with pytest.raises(ValueError):
            ComponentSpec(name="bad name", critical_path="x")
        assert ComponentSpec(name="web-ui", critical_path="x").container("app") == "app-web-ui"
        assert ComponentSpec(
            name="web", critical_path="x", container_name="nginx",
        ).container("app") == "nginx"

    def test_component_lookup(self):
        definition = PipelineDefinition.model_validate(DEFINITION)
        assert set(definition.component_map()) == {"backend", "frontend"}
        with pytest.raises(KeyError):
            definition.component("db")
