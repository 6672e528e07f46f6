# shipline/tools/retry_run.py
"""
retry_run tool implementation.

Re-queues failed, interrupted or rolled-back runs for processing.
"""

import logging

from fastmcp.exceptions import ToolError

from shipline.models.responses import RetryRunResponse
from shipline.models.runs import RETRYABLE_STATES, RunState
from shipline.models.store import RunStore
from shipline.tools.common import load_run

logger = logging.getLogger(__name__)


async def retry_run(run_id: str, store: RunStore, resume: bool = True) -> dict:
    """
    Retry a run by re-queuing it.

    With resume=True the next execution skips stages recorded in the
    checkpoint; rolled-back stages were removed from it and run again.

    Args:
        run_id: Run identifier
        store: Run storage instance
        resume: Resume from checkpoint (False = run every stage again)

    Returns:
        RetryRunResponse as dict

    Raises:
        ToolError: If run_id is invalid, not found, or not in a retryable state
    """
    record = await load_run(run_id, store)

    if record.state not in RETRYABLE_STATES:
        allowed = ", ".join(sorted(s.value for s in RETRYABLE_STATES))
        raise ToolError(
            f"Run '{record.run_id}' is in '{record.state.value}' state. "
            f"Only {allowed} runs can be retried."
        )

    await store.update(
        record.run_id,
        state=RunState.QUEUED,
        error=None,
        failed_stage=None,
        current_stage=None,
        resume=resume,
        progress=record.progress if resume else 0.0,
    )

    logger.info(f"Re-queued run {record.run_id} (was {record.state.value}, resume={resume})")

    response = RetryRunResponse(
        run_id=record.run_id,
        status="re-queued",
        resume=resume,
        message="Run re-queued for processing. Use check_status to monitor.",
    )

    return response.model_dump()
