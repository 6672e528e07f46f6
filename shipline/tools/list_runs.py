# shipline/tools/list_runs.py
"""
list_runs tool implementation.

Lists release runs with their state.
"""

import logging

from shipline.models.responses import ListRunsResponse, RunSummary
from shipline.models.store import RunStore

logger = logging.getLogger(__name__)


async def list_runs(store: RunStore, pipeline: str | None = None) -> dict:
    """
    List release runs, newest first.

    Args:
        store: Run storage instance
        pipeline: Only runs of this pipeline (None = all)

    Returns:
        ListRunsResponse as dict
    """
    records = await store.list_all(pipeline=pipeline)

    summaries = [
        RunSummary(
            run_id=record.run_id,
            pipeline=record.pipeline,
            state=record.state.value,
            branch=record.branch,
            failed_stage=record.failed_stage,
            created_at=record.created_at.isoformat(),
        )
        for record in records
    ]

    response = ListRunsResponse(runs=summaries, total=len(summaries))

    logger.info(f"Listed {len(summaries)} run(s)")
    return response.model_dump()
