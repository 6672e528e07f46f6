# shipline/tools/check_status.py
"""
check_status tool implementation.

Retrieves run state and progress information.
"""

import logging

from shipline.models.responses import RunStatusResponse
from shipline.models.runs import RunRecord, RunState
from shipline.models.store import RunStore
from shipline.tools.common import load_run

logger = logging.getLogger(__name__)


def status_message(record: RunRecord) -> str:
    """Build a human-readable status message for a run."""
    state = record.state
    if state == RunState.QUEUED:
        return "Run is queued. Start a worker (shipline worker) to process it."
    if state == RunState.RUNNING:
        stage_info = f" (stage: {record.current_stage})" if record.current_stage else ""
        return f"Run is running{stage_info}. Progress: {record.progress * 100:.1f}%"
    if state == RunState.SUCCEEDED:
        return "Release succeeded."
    if state == RunState.INTERRUPTED:
        return (
            f"Run was interrupted (runner restart). Error: {record.error or 'Unknown'}. "
            "Use retry_run to resume it."
        )
    if state == RunState.ROLLED_BACK:
        return (
            f"Release failed at stage '{record.failed_stage}' and was rolled back "
            "to last-known-good."
        )
    if state == RunState.ROLLBACK_FAILED:
        return (
            f"Release failed at stage '{record.failed_stage}' and rollback failed. "
            "Manual intervention required; use rollback_run to retry the rollback."
        )
    return f"Release failed: {record.error or 'Unknown error'}. Use retry_run to re-queue."


async def check_status(run_id: str, store: RunStore) -> dict:
    """
    Check the status of a release run.

    Args:
        run_id: Run identifier from create_run
        store: Run storage instance

    Returns:
        RunStatusResponse as dict

    Raises:
        ToolError: If run_id is invalid or not found
    """
    record = await load_run(run_id, store)

    response = RunStatusResponse(
        run_id=record.run_id,
        pipeline=record.pipeline,
        state=record.state.value,
        progress=record.progress,
        current_stage=record.current_stage,
        failed_stage=record.failed_stage,
        message=status_message(record),
        error=record.error,
    )

    return response.model_dump()
