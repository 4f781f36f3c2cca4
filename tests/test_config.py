"""
Tests for Settings loading.
"""
from pathlib import Path

import pytest
import yaml

from pkg.boardstore.config import Settings
from pkg.boardstore.errors import ConfigError


class TestSettings:

    def _write_config(self, tmp_path, config) -> Path:
        config_file = tmp_path / "boardstore.yaml"
        with open(config_file, "w") as f:
            yaml.dump(config, f)
        return config_file

    @pytest.fixture(autouse=True)
    def _clean_env(self, monkeypatch):
        monkeypatch.delenv("BOARDSTORE_CONFIG", raising=False)
        monkeypatch.delenv("BOARDSTORE_DB", raising=False)

    def test_missing_file_uses_defaults(self, tmp_path):
        cfg = Settings.load(str(tmp_path / "absent.yaml"))
        assert cfg.max_retries == 3
        assert cfg.circuit_failure_threshold == 5
        assert cfg.backup_retention_days == 30
        assert cfg.default_boards == ["To Do", "In Progress", "Done"]
        assert "civil" in cfg.context_boards
        assert cfg.db_path.startswith(str(Path.home()))

    def test_loads_values(self, tmp_path):
        config_file = self._write_config(tmp_path, {
            "db_path": str(tmp_path / "b.db"),
            "max_retries": 5,
            "retry_base_delay": 0.5,
            "default_boards": ["Backlog", "Done"],
            "context_boards": {"ops": ["Triage", "Fixing"]},
            "log_level": "debug",
        })
        cfg = Settings.load(str(config_file))
        assert cfg.max_retries == 5
        assert cfg.retry_base_delay == 0.5
        assert cfg.default_boards == ["Backlog", "Done"]
        assert cfg.context_boards == {"ops": ["Triage", "Fixing"]}
        assert cfg.db_path == str(tmp_path / "b.db")

    def test_unknown_keys_ignored(self, tmp_path):
        config_file = self._write_config(tmp_path, {"max_retries": 1, "colour": "blue"})
        assert Settings.load(str(config_file)).max_retries == 1

    def test_env_config_path(self, tmp_path, monkeypatch):
        config_file = self._write_config(tmp_path, {"throttle_ms": 250})
        monkeypatch.setenv("BOARDSTORE_CONFIG", str(config_file))
        assert Settings.load().throttle_ms == 250

    def test_env_db_override(self, tmp_path, monkeypatch):
        config_file = self._write_config(tmp_path, {"db_path": "/nowhere/x.db"})
        monkeypatch.setenv("BOARDSTORE_DB", str(tmp_path / "env.db"))
        assert Settings.load(str(config_file)).db_path == str(tmp_path / "env.db")

    def test_invalid_yaml_raises(self, tmp_path):
        config_file = tmp_path / "bad.yaml"
        config_file.write_text("max_retries: [unclosed\n")
        with pytest.raises(ConfigError, match="Cannot read config"):
            Settings.load(str(config_file))

    def test_non_mapping_raises(self, tmp_path):
        config_file = tmp_path / "list.yaml"
        config_file.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            Settings.load(str(config_file))

    def test_bad_values_raise(self, tmp_path):
        config_file = self._write_config(tmp_path, {"max_retries": -1, "default_boards": []})
        with pytest.raises(ConfigError) as exc:
            Settings.load(str(config_file))
        assert "max_retries" in str(exc.value)
        assert "default_boards" in str(exc.value)

    def test_wrong_type_raises(self, tmp_path):
        config_file = self._write_config(tmp_path, {"circuit_timeout": "soon"})
        with pytest.raises(ConfigError):
            Settings.load(str(config_file))
