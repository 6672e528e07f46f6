# shipline/tools/rollback_run.py
"""
rollback_run tool implementation.

Manually reverts the completed stages of a failed run to last-known-good.
"""

import logging

from fastmcp.exceptions import ToolError

from shipline.background.worker import BackgroundWorker
from shipline.config.schema import ShiplineConfig
from shipline.errors import DefinitionError
from shipline.models.responses import RollbackRunResponse
from shipline.models.runs import RunState
from shipline.models.store import RunStore
from shipline.pipeline.stages import StageStatus
from shipline.tools.common import load_run
from shipline.tools.get_run import stage_summary

logger = logging.getLogger(__name__)

ROLLBACK_STATES = {RunState.FAILED, RunState.INTERRUPTED, RunState.ROLLBACK_FAILED}


async def rollback_run(run_id: str, store: RunStore, config: ShiplineConfig) -> dict:
    """
    Roll back a failed run that was not (fully) rolled back.

    Stages are reverted in reverse completion order; stages already
    rolled back are not reverted again.

    Args:
        run_id: Run identifier
        store: Run storage instance
        config: Configuration instance

    Returns:
        RollbackRunResponse as dict

    Raises:
        ToolError: If the run is unknown, in the wrong state, or has nothing to revert
    """
    record = await load_run(run_id, store)

    if record.state not in ROLLBACK_STATES:
        allowed = ", ".join(sorted(s.value for s in ROLLBACK_STATES))
        raise ToolError(
            f"Run '{record.run_id}' is in '{record.state.value}' state. "
            f"Only {allowed} runs can be rolled back."
        )

    worker = BackgroundWorker(store, config=config)
    try:
        results = await worker.rollback_run(record.run_id)
    except DefinitionError as e:
        raise ToolError(f"Stored definition of run '{record.run_id}' is invalid: {e}")

    if not results:
        raise ToolError(
            f"Nothing to roll back for run '{record.run_id}': "
            "no completed stage declares a rollback command"
        )

    updated = await store.get(record.run_id)
    state = updated.state.value if updated else record.state.value
    failed = [r.stage_name for r in results if r.status is StageStatus.ROLLBACK_FAILED]
    message = (
        f"Rollback failed for: {', '.join(failed)}"
        if failed
        else f"Rolled back {len(results)} stage(s)"
    )

    logger.info(f"Manual rollback of run {record.run_id}: {message}")

    response = RollbackRunResponse(
        run_id=record.run_id,
        state=state,
        rollbacks=[stage_summary(r.to_dict()) for r in results],
        message=message,
    )

    return response.model_dump()
