# shipline/config/__init__.py
"""Configuration system for shipline."""

from .loader import get_config_path, load_config, resolve_db_path
from .schema import (
    ExecutorConfig,
    OutputConfig,
    RetryConfig,
    RollbackConfig,
    SecretsConfig,
    ShiplineConfig,
    StoreConfig,
)

__all__ = [
    "ShiplineConfig",
    "StoreConfig",
    "ExecutorConfig",
    "RetryConfig",
    "RollbackConfig",
    "SecretsConfig",
    "OutputConfig",
    "load_config",
    "get_config_path",
    "resolve_db_path",
]
