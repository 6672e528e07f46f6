# shipline/config/loader.py
"""
Configuration loading with auto-creation of defaults.

Uses platformdirs for cross-platform config directory management.
"""

import logging
import os
from pathlib import Path

import yaml
from platformdirs import user_config_path

from .schema import ShiplineConfig

logger = logging.getLogger(__name__)

APP_NAME = "shipline"
CONFIG_ENV_VAR = "SHIPLINE_CONFIG"


def get_config_dir() -> Path:
    """Get the shipline config directory, creating it if needed."""
    return user_config_path(APP_NAME, ensure_exists=True)


def get_config_path() -> Path:
    """Get path to config file ($SHIPLINE_CONFIG overrides the default location)."""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override)
    return get_config_dir() / "config.yaml"


def load_config(path: Path | None = None) -> ShiplineConfig:
    """
    Load configuration from YAML file.

    If config file doesn't exist, creates it with defaults.
    Returns validated Pydantic model.
    """
    config_path = path or get_config_path()

    if not config_path.exists():
        default_config = ShiplineConfig()
        config_dict = default_config.model_dump(mode="json")

        config_path.parent.mkdir(parents=True, exist_ok=True)
        with config_path.open("w") as f:
            yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Created default config at {config_path}")
        return default_config

    with config_path.open("r") as f:
        config_data = yaml.safe_load(f) or {}

    config = ShiplineConfig(**config_data)
    logger.info(f"Loaded config from {config_path}")
    return config


def resolve_db_path(config: ShiplineConfig) -> str:
    """Return the effective SQLite run database path for a config."""
    if config.store.db_path:
        db_path = Path(config.store.db_path).expanduser()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return str(db_path)
    return str(get_config_dir() / "runs.db")
