# shipline/server.py
"""
FastMCP server instance with tool registration.

CRITICAL: configure_logging() is called first to prevent stdout pollution.
All logging goes to stderr as JSON.
"""

# Configure logging FIRST before any other imports
from shipline.logging_config import configure_logging

configure_logging()

# Now safe to import everything else
import logging

from fastmcp import FastMCP

from shipline.background.lifecycle import ServerLifecycle
from shipline.config.loader import load_config, resolve_db_path
from shipline.config.schema import ShiplineConfig
from shipline.models.store import RunStore
from shipline.tools.check_status import check_status as _check_status
from shipline.tools.create_run import create_run as _create_run
from shipline.tools.get_run import get_run as _get_run
from shipline.tools.get_stage_log import get_stage_log as _get_stage_log
from shipline.tools.list_runs import list_runs as _list_runs
from shipline.tools.retry_run import retry_run as _retry_run
from shipline.tools.rollback_run import rollback_run as _rollback_run
from shipline.tools.validate_pipeline import validate_pipeline as _validate_pipeline

logger = logging.getLogger(__name__)

mcp = FastMCP("shipline")

_config = load_config()
configure_logging(_config.output.verbosity)
logger.info(f"Loaded configuration: shell={_config.executor.shell}")

# Lifecycle manager (initialized by main())
_lifecycle: ServerLifecycle | None = None


async def get_store() -> RunStore:
    """
    Get the run store from the lifecycle manager.

    Raises:
        RuntimeError: If lifecycle not initialized
    """
    if _lifecycle is None:
        raise RuntimeError("Server lifecycle not initialized. Call initialize_lifecycle() first.")
    return _lifecycle.store


async def initialize_lifecycle(config: ShiplineConfig | None = None) -> None:
    """
    Initialize the server lifecycle (DB + crash recovery + worker + signals).

    Must be called before any tool calls.

    Args:
        config: ShiplineConfig instance (defaults to module-level _config if None)
    """
    global _lifecycle

    actual_config = config or _config
    db_path = resolve_db_path(actual_config)
    logger.info(f"Initializing lifecycle with db_path={db_path}")

    _lifecycle = ServerLifecycle(db_path, config=actual_config)
    await _lifecycle.startup()

    logger.info("Lifecycle initialized: SQLite + worker + signals ready")


@mcp.tool()
async def validate_pipeline(definition_path: str) -> dict:
    """Validate a pipeline definition file and return its stage execution order."""
    return await _validate_pipeline(definition_path)


@mcp.tool()
async def create_run(definition_path: str, branch: str | None = None) -> dict:
    """Queue a release run of a pipeline definition. The worker executes it in the background."""
    store = await get_store()
    return await _create_run(definition_path, branch, store=store, config=_config)


@mcp.tool()
async def check_status(run_id: str) -> dict:
    """Check the status of a release run. Returns state, progress, and current stage."""
    store = await get_store()
    return await _check_status(run_id, store=store)


@mcp.tool()
async def list_runs(pipeline: str | None = None) -> dict:
    """List release runs, newest first, optionally for one pipeline."""
    store = await get_store()
    return await _list_runs(store=store, pipeline=pipeline)


@mcp.tool()
async def get_run(run_id: str) -> dict:
    """Get a release run with per-stage results, outputs and rollbacks."""
    store = await get_store()
    return await _get_run(run_id, store=store)


@mcp.tool()
async def retry_run(run_id: str, resume: bool = True) -> dict:
    """Re-queue a failed, interrupted or rolled-back run (resumes from checkpoint by default)."""
    store = await get_store()
    return await _retry_run(run_id, store=store, resume=resume)


@mcp.tool()
async def rollback_run(run_id: str) -> dict:
    """Roll back the completed stages of a failed run to last-known-good."""
    store = await get_store()
    return await _rollback_run(run_id, store=store, config=_config)


@mcp.tool()
async def get_stage_log(run_id: str, stage: str, attempt: str | None = None) -> dict:
    """Read the redacted log of a stage attempt (latest attempt by default, or 'rollback')."""
    store = await get_store()
    return await _get_stage_log(run_id, stage, store=store, config=_config, attempt=attempt)


async def main() -> None:
    """
    Main entry point.

    Initializes lifecycle (DB + worker + signals) and then runs the MCP server
    on stdio.
    """
    await initialize_lifecycle()

    logger.info("Starting MCP server on stdio transport")
    try:
        await mcp.run_stdio_async()
    finally:
        if _lifecycle is not None:
            await _lifecycle.shutdown()


logger.info("MCP server initialized with 8 tools")
