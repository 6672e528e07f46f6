# shipline/tools/get_stage_log.py
"""
get_stage_log tool implementation.

Reads the (redacted) log of one stage attempt.
"""

import logging
import re
from pathlib import Path

from fastmcp.exceptions import ToolError

from shipline.config.schema import ShiplineConfig
from shipline.models.responses import StageLogResponse
from shipline.models.store import RunStore
from shipline.pipeline.executor import CommandExecutor
from shipline.tools.common import load_run
from shipline.validation.sanitize import sanitize_attempt, sanitize_stage_name

logger = logging.getLogger(__name__)


def _latest_attempt(run_dir: Path, stage: str) -> str | None:
    pattern = re.compile(rf"^{re.escape(stage)}\.(\d+)\.log$")
    attempts = [
        int(match.group(1))
        for path in run_dir.glob(f"{stage}.*.log")
        if (match := pattern.match(path.name))
    ]
    return str(max(attempts)) if attempts else None


async def get_stage_log(
    run_id: str,
    stage: str,
    store: RunStore,
    config: ShiplineConfig,
    attempt: str | int | None = None,
) -> dict:
    """
    Read a stage log.

    Args:
        run_id: Run identifier
        stage: Stage name
        store: Run storage instance
        config: Configuration instance (for executor.logs_dir)
        attempt: Attempt number or 'rollback' (None = latest attempt)

    Returns:
        StageLogResponse as dict

    Raises:
        ToolError: If the run/stage is unknown or no log exists
    """
    record = await load_run(run_id, store)
    stage = sanitize_stage_name(stage)

    stage_names = [spec["name"] for spec in record.definition.get("stages", [])]
    if stage not in stage_names:
        raise ToolError(
            f"Stage '{stage}' is not part of pipeline '{record.pipeline}' "
            f"(stages: {', '.join(stage_names)})"
        )

    executor = CommandExecutor(logs_dir=config.executor.logs_dir)
    if attempt is None:
        selected = _latest_attempt(executor.logs_dir / record.run_id, stage)
        if selected is None:
            raise ToolError(f"No logs for stage '{stage}' of run '{record.run_id}' yet")
    else:
        selected = sanitize_attempt(attempt)

    log_path = executor.log_path_for(record.run_id, stage, selected)
    try:
        content = log_path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        raise ToolError(f"No log for attempt '{selected}' of stage '{stage}' ({log_path})")
    except OSError as e:
        raise ToolError(f"Could not read log '{log_path}': {e}")

    response = StageLogResponse(
        run_id=record.run_id,
        stage=stage,
        attempt=selected,
        log_path=str(log_path),
        content=content,
    )

    return response.model_dump()
