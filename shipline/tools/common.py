# shipline/tools/common.py
"""Lookups shared by the run tools."""

from fastmcp.exceptions import ToolError

from shipline.models.runs import RunRecord
from shipline.models.store import RunStore
from shipline.validation.sanitize import sanitize_run_id


async def load_run(run_id: str, store: RunStore) -> RunRecord:
    """
    Validate a run ID and fetch its record.

    Raises:
        ToolError: If run_id is invalid or not found
    """
    try:
        sanitized_id = sanitize_run_id(run_id)
    except ToolError:
        raise
    except Exception as e:
        raise ToolError(f"Invalid run ID: {e}")

    record = await store.get(sanitized_id)
    if not record:
        raise ToolError(f"Run '{sanitized_id}' not found. Use list_runs to see available runs.")
    return record
