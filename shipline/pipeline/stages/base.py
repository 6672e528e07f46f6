# shipline/pipeline/stages/base.py
"""
Abstract base class for pipeline stages.

Each stage knows how to execute itself against a StageContext and, when it
declares one, how to revert its effect. Stages are executed by the
ReleasePipeline in dependency order.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from shipline.pipeline.secrets import SecretStore

logger = logging.getLogger(__name__)

_ENV_UNSAFE = re.compile(r"[^A-Za-z0-9]+")


def env_key(*parts: str) -> str:
    """Build an environment variable name: upper-cased, non-alphanumerics -> '_'."""
    return "_".join(_ENV_UNSAFE.sub("_", part).strip("_").upper() for part in parts)


class StageStatus(str, Enum):
    """Stage lifecycle states."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CACHED = "cached"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


@dataclass
class StageResult:
    """
    Result of executing (or rolling back) a pipeline stage.

    Attributes:
        stage_name: Name of the stage that produced this result
        status: Final StageStatus
        outputs: Typed outputs (empty unless succeeded/cached)
        attempts: Number of command attempts made
        exit_code: Exit code of the last attempt (None if never run)
        duration: Total seconds across attempts
        error: Error message if the stage failed or was skipped
        log_path: Log file of the last attempt
        allowed_failure: Failure does not fail the release
    """

    stage_name: str
    status: StageStatus
    outputs: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    exit_code: int | None = None
    duration: float = 0.0
    error: str | None = None
    log_path: str | None = None
    allowed_failure: bool = False

    @property
    def ok(self) -> bool:
        """True if downstream stages may consume this stage's outputs."""
        return self.status in (StageStatus.SUCCEEDED, StageStatus.CACHED)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StageResult":
        return cls(**{**data, "status": StageStatus(data["status"])})


@dataclass
class StageContext:
    """
    Everything a stage sees at execution time.

    Attributes:
        run_id: Run identifier (used for log locations)
        pipeline_env: Pipeline-level environment
        upstream_outputs: stage name -> outputs of completed stages in this run
        last_good: stage name -> outputs from the last successful run
        last_good_run_id: Run ID of the last successful run
        secrets: Store used to resolve declared secrets
    """

    run_id: str
    pipeline_env: dict[str, str] = field(default_factory=dict)
    upstream_outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    last_good: dict[str, dict[str, Any]] = field(default_factory=dict)
    last_good_run_id: str | None = None
    secrets: SecretStore | None = None


class PipelineStage(ABC):
    """
    Abstract base class for release pipeline stages.

    Each stage defines:
    1. Its name and dependencies (used by the orchestrator for ordering)
    2. Execution (never raises for a stage failure; returns a failed StageResult)
    3. Optionally, a rollback that reverts its effect
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique stage identifier (used in logging and checkpointing)."""
        pass

    @property
    def needs(self) -> list[str]:
        """Names of stages that must succeed before this one."""
        return []

    @property
    def consumes(self) -> set[str]:
        """Names of stages whose outputs this stage reads."""
        return set()

    @property
    def allow_failure(self) -> bool:
        return False

    @property
    def has_rollback(self) -> bool:
        return False

    @abstractmethod
    async def execute(self, context: StageContext) -> StageResult:
        """
        Execute the stage.

        Args:
            context: Run context with upstream outputs and secrets

        Returns:
            StageResult with status SUCCEEDED or FAILED
        """
        pass

    async def rollback(self, context: StageContext, outputs: dict[str, Any]) -> StageResult:
        """
        Revert the effect of a completed execution.

        Args:
            context: Run context (including last-known-good outputs)
            outputs: Outputs produced by the execution being reverted

        Returns:
            StageResult with status ROLLED_BACK or ROLLBACK_FAILED
        """
        raise NotImplementedError(f"Stage '{self.name}' has no rollback")
