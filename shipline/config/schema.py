# shipline/config/schema.py
"""
Pydantic configuration models for shipline.

All models use extra="ignore" to allow unknown YAML keys without crashing.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class StoreConfig(BaseModel):
    """Run database configuration."""

    model_config = ConfigDict(extra="ignore")

    db_path: str | None = Field(
        default=None,
        description="SQLite database path (None = runs.db in the user config dir)",
    )


class ExecutorConfig(BaseModel):
    """Stage command execution configuration."""

    model_config = ConfigDict(extra="ignore")

    shell: str = Field(default="/bin/sh", description="Shell used to run stage commands")
    default_timeout: int = Field(
        default=1800, ge=1, description="Per-attempt timeout in seconds when a stage sets none"
    )
    logs_dir: str = Field(
        default=".shipline/logs", description="Directory for per-attempt stage logs"
    )
    max_output_chars: int = Field(
        default=20_000, ge=0, description="Tail of command output kept in memory per attempt"
    )


class RetryConfig(BaseModel):
    """Default retry policy for stages that do not declare one."""

    model_config = ConfigDict(extra="ignore")

    max_attempts: int = Field(default=1, ge=1, le=10, description="Attempts per stage")
    backoff: float = Field(
        default=2.0, ge=0.0, description="Exponential backoff multiplier in seconds"
    )
    max_backoff: float = Field(
        default=60.0, ge=0.0, description="Upper bound on the wait between attempts"
    )


class RollbackConfig(BaseModel):
    """Rollback controller configuration."""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = Field(
        default=True, description="Run rollback commands when a release fails"
    )
    timeout: int = Field(default=600, ge=1, description="Timeout for each rollback command")


class SecretsConfig(BaseModel):
    """Secret store configuration."""

    model_config = ConfigDict(extra="ignore")

    env_prefix: str = Field(
        default="SHIPLINE_SECRET_",
        description="Prefix tried first when resolving secrets from the environment",
    )
    file: str | None = Field(
        default=None, description="Optional YAML file mapping secret names to values"
    )


class OutputConfig(BaseModel):
    """Logging output configuration."""

    model_config = ConfigDict(extra="ignore")

    verbosity: Literal["quiet", "normal", "verbose"] = Field(
        default="normal", description="Logging verbosity level"
    )


class ShiplineConfig(BaseModel):
    """Root configuration for shipline."""

    model_config = ConfigDict(extra="ignore")

    store: StoreConfig = Field(default_factory=StoreConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    rollback: RollbackConfig = Field(default_factory=RollbackConfig)
    secrets: SecretsConfig = Field(default_factory=SecretsConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
