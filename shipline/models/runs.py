# shipline/models/runs.py
"""
Run tracking models and in-memory storage.

Internal models for release runs (the MCP/CLI layer returns pydantic
responses built from these).
"""

import json
import logging
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from shipline.models.store import RunStore

logger = logging.getLogger(__name__)


class RunState(Enum):
    """Run lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"
    INTERRUPTED = "interrupted"


TERMINAL_STATES = {
    RunState.SUCCEEDED,
    RunState.FAILED,
    RunState.ROLLED_BACK,
    RunState.ROLLBACK_FAILED,
}

RETRYABLE_STATES = {
    RunState.FAILED,
    RunState.INTERRUPTED,
    RunState.ROLLED_BACK,
    RunState.ROLLBACK_FAILED,
}


@dataclass
class RunRecord:
    """
    Internal run record.

    definition_json is a snapshot of the pipeline definition taken when the
    run was queued, so the run executes exactly what was validated.
    """

    run_id: str
    pipeline: str
    definition_path: str | None
    definition_json: str
    state: RunState
    created_at: datetime
    branch: str | None = None
    progress: float = 0.0
    current_stage: str | None = None
    error: str | None = None
    failed_stage: str | None = None
    pipeline_state: str | None = None  # JSON checkpoint data
    stage_results_json: str | None = None  # JSON {"stages": [...], "rollbacks": [...]}
    resume: bool = False  # Next execution resumes from checkpoint
    updated_at: datetime | None = None

    @property
    def definition(self) -> dict[str, Any]:
        return json.loads(self.definition_json)

    def _results(self, key: str) -> list[dict[str, Any]]:
        if not self.stage_results_json:
            return []
        return json.loads(self.stage_results_json).get(key, [])

    @property
    def stage_results(self) -> list[dict[str, Any]]:
        """StageResult dicts of the last execution, in execution order."""
        return self._results("stages")

    @property
    def rollback_results(self) -> list[dict[str, Any]]:
        """StageResult dicts of every rollback applied to this run."""
        return self._results("rollbacks")

    @property
    def stage_outputs(self) -> dict[str, dict[str, Any]]:
        """stage name -> outputs for stages that succeeded (or were cached)."""
        return {
            result["stage_name"]: result.get("outputs", {})
            for result in self.stage_results
            if result.get("status") in ("succeeded", "cached")
        }


def dump_results(stages: list[dict[str, Any]], rollbacks: list[dict[str, Any]]) -> str:
    """Serialize stage and rollback results for RunRecord.stage_results_json."""
    return json.dumps({"stages": stages, "rollbacks": rollbacks})


UPDATABLE_FIELDS = {f.name for f in fields(RunRecord)} - {"run_id", "created_at"}


class InMemoryRunStore(RunStore):
    """
    Simple in-memory run storage.

    Thread-safe for single-process usage.
    Implements RunStore protocol with async wrappers around sync operations.
    """

    def __init__(self) -> None:
        self._runs: dict[str, RunRecord] = {}
        logger.info("Initialized InMemoryRunStore")

    async def add(self, record: RunRecord) -> None:
        if record.run_id in self._runs:
            raise ValueError(f"Run {record.run_id} already exists")

        if record.updated_at is None:
            record.updated_at = datetime.now(timezone.utc)
        self._runs[record.run_id] = record
        logger.info(f"Added run {record.run_id} to store")

    async def get(self, run_id: str) -> RunRecord | None:
        return self._runs.get(run_id)

    async def list_all(self, pipeline: str | None = None) -> list[RunRecord]:
        records = [r for r in self._runs.values() if pipeline is None or r.pipeline == pipeline]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def update(self, run_id: str, **kwargs) -> None:
        record = self._runs.get(run_id)
        if not record:
            raise ValueError(f"Run {run_id} not found")

        invalid = set(kwargs) - UPDATABLE_FIELDS
        if invalid:
            raise ValueError(f"Invalid field names: {invalid}")

        for key, value in kwargs.items():
            setattr(record, key, value)
        if "updated_at" not in kwargs:
            record.updated_at = datetime.now(timezone.utc)

        logger.debug(f"Updated run {run_id}: {list(kwargs)}")

    async def get_next_queued(self) -> RunRecord | None:
        queued = [r for r in self._runs.values() if r.state == RunState.QUEUED]
        if not queued:
            return None
        return min(queued, key=lambda r: r.created_at)

    async def claim(self, run_id: str) -> bool:
        record = self._runs.get(run_id)
        if record is None or record.state != RunState.QUEUED:
            return False
        record.state = RunState.RUNNING
        record.updated_at = datetime.now(timezone.utc)
        return True

    async def get_last_successful(self, pipeline: str) -> RunRecord | None:
        succeeded = [
            r for r in self._runs.values()
            if r.pipeline == pipeline and r.state == RunState.SUCCEEDED
        ]
        if not succeeded:
            return None
        return max(succeeded, key=lambda r: r.updated_at or r.created_at)


def generate_run_id() -> str:
    """
    Generate a unique run ID.

    Returns:
        12-character hex string (UUID4 truncated)
    """
    return uuid4().hex[:12]
