# tests/unit/test_config.py
"""Tests for configuration loading and defaults."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from shipline.config import ShiplineConfig, get_config_path, load_config, resolve_db_path


def test_missing_file_creates_defaults(tmp_path: Path):
    """A missing config file is created with default values."""
    config_path = tmp_path / "nested" / "config.yaml"

    config = load_config(config_path)

    assert config_path.exists()
    assert config == ShiplineConfig()
    written = yaml.safe_load(config_path.read_text())
    assert written["executor"]["shell"] == "/bin/sh"
    assert written["retry"]["max_attempts"] == 1


def test_empty_file_yields_defaults(tmp_path: Path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("")

    assert load_config(config_path) == ShiplineConfig()


def test_values_override_defaults_and_unknown_keys_are_ignored(tmp_path: Path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "executor": {"default_timeout": 60, "unknown_option": True},
                "retry": {"max_attempts": 3, "backoff": 0.5},
                "rollback": {"enabled": False},
                "legacy_section": {"x": 1},
            }
        )
    )

    config = load_config(config_path)

    assert config.executor.default_timeout == 60
    assert config.executor.logs_dir == ".shipline/logs"
    assert config.retry.max_attempts == 3
    assert config.retry.backoff == 0.5
    assert config.rollback.enabled is False


def test_invalid_value_raises(tmp_path: Path):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump({"retry": {"max_attempts": 0}}))

    with pytest.raises(ValidationError):
        load_config(config_path)


def test_invalid_verbosity_raises():
    with pytest.raises(ValidationError):
        ShiplineConfig(output={"verbosity": "loud"})


def test_config_path_env_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    override = tmp_path / "custom.yaml"
    monkeypatch.setenv("SHIPLINE_CONFIG", str(override))

    assert get_config_path() == override


def test_resolve_db_path_uses_configured_path(tmp_path: Path):
    db_path = tmp_path / "data" / "runs.db"
    config = ShiplineConfig(store={"db_path": str(db_path)})

    resolved = resolve_db_path(config)

    assert resolved == str(db_path)
    assert db_path.parent.is_dir()
