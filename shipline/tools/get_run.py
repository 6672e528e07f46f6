# shipline/tools/get_run.py
"""
get_run tool implementation.

Returns a run with its per-stage and rollback results.
"""

import logging
from typing import Any

from shipline.models.responses import RunDetailResponse, StageSummary
from shipline.models.store import RunStore
from shipline.tools.common import load_run

logger = logging.getLogger(__name__)


def stage_summary(result: dict[str, Any]) -> StageSummary:
    """Convert a stored StageResult dict into a StageSummary."""
    return StageSummary(
        name=result["stage_name"],
        status=result["status"],
        attempts=result.get("attempts", 0),
        exit_code=result.get("exit_code"),
        duration=result.get("duration", 0.0),
        outputs=result.get("outputs") or {},
        error=result.get("error"),
        log_path=result.get("log_path"),
        allowed_failure=result.get("allowed_failure", False),
    )


async def get_run(run_id: str, store: RunStore) -> dict:
    """
    Retrieve a run with per-stage results.

    Stages that have not run yet (queued or running runs) are reported as pending.

    Args:
        run_id: Run identifier
        store: Run storage instance

    Returns:
        RunDetailResponse as dict

    Raises:
        ToolError: If run_id is invalid or not found
    """
    record = await load_run(run_id, store)

    results = {r["stage_name"]: r for r in record.stage_results}
    stages = []
    for spec in record.definition.get("stages", []):
        name = spec["name"]
        if name in results:
            stages.append(stage_summary(results[name]))
        else:
            stages.append(StageSummary(name=name, status="pending"))

    response = RunDetailResponse(
        run_id=record.run_id,
        pipeline=record.pipeline,
        state=record.state.value,
        branch=record.branch,
        created_at=record.created_at.isoformat(),
        updated_at=record.updated_at.isoformat() if record.updated_at else None,
        failed_stage=record.failed_stage,
        error=record.error,
        stages=stages,
        rollbacks=[stage_summary(r) for r in record.rollback_results],
    )

    return response.model_dump()
