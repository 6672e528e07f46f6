# shipline/tools/create_run.py
"""
create_run tool implementation.

Validates the definition, checks the branch trigger, snapshots the definition
and queues a release run.
"""

import json
import logging
from datetime import datetime, timezone

from fastmcp.exceptions import ToolError

from shipline.config.schema import ShiplineConfig
from shipline.models.responses import CreateRunResponse
from shipline.models.runs import RunRecord, RunState, generate_run_id
from shipline.models.store import RunStore
from shipline.tools.validate_pipeline import load_validated
from shipline.validation.sanitize import sanitize_definition_path

logger = logging.getLogger(__name__)


async def create_run(
    definition_path: str,
    branch: str | None,
    store: RunStore,
    config: ShiplineConfig,
) -> dict:
    """
    Queue a new release run.

    Args:
        definition_path: Path to the YAML pipeline definition
        branch: Branch the release is triggered from (None skips the trigger check)
        store: Run storage instance
        config: Configuration instance

    Returns:
        CreateRunResponse as dict

    Raises:
        ToolError: If the definition is invalid or the branch may not trigger it
    """
    definition, graph = load_validated(definition_path)

    cleaned_branch = branch.strip() if branch and branch.strip() else None
    if not definition.trigger.matches(cleaned_branch):
        raise ToolError(
            f"Branch '{cleaned_branch}' does not trigger pipeline '{definition.name}' "
            f"(allowed: {', '.join(definition.trigger.branches)})"
        )

    run_id = generate_run_id()

    record = RunRecord(
        run_id=run_id,
        pipeline=definition.name,
        definition_path=str(sanitize_definition_path(definition_path)),
        definition_json=json.dumps(definition.model_dump(mode="json")),
        state=RunState.QUEUED,
        created_at=datetime.now(timezone.utc),
        branch=cleaned_branch,
    )

    try:
        await store.add(record)
    except ValueError as e:
        logger.error(f"Run ID collision: {e}")
        raise ToolError(f"Internal error creating run: {e}")

    logger.info(
        f"Queued run {run_id} of pipeline '{definition.name}'"
        + (f" from branch {cleaned_branch}" if cleaned_branch else "")
    )

    response = CreateRunResponse(
        run_id=run_id,
        pipeline=definition.name,
        status="queued",
        stages=graph.order(),
    )

    return response.model_dump()
