# shipline/validation/sanitize.py
"""
Input sanitization and validation utilities.

Provides path validation, run ID checks and name filters for tool inputs.
"""

import logging
import re
from pathlib import Path

from fastmcp.exceptions import ToolError

from shipline.pipeline.definition import STAGE_NAME_PATTERN

logger = logging.getLogger(__name__)

_RUN_ID_PATTERN = re.compile(r"^[a-zA-Z0-9-]{8,64}$")
_ATTEMPT_PATTERN = re.compile(r"^([1-9][0-9]?|rollback)$")


def sanitize_definition_path(user_path: str) -> Path:
    """
    Sanitize and validate a pipeline definition path.

    Resolves to absolute path and checks it is an existing file.

    Args:
        user_path: User-provided path string

    Returns:
        Resolved absolute Path object

    Raises:
        ToolError: If path doesn't exist or is not a file
    """
    if not user_path or not user_path.strip():
        raise ToolError("Definition path cannot be empty")

    try:
        resolved = Path(user_path.strip()).expanduser().resolve()
    except (ValueError, OSError) as e:
        raise ToolError(f"Invalid path '{user_path}': {e}")

    if not resolved.exists():
        raise ToolError(f"Definition file does not exist: {resolved}")

    if not resolved.is_file():
        raise ToolError(f"Definition path is not a file: {resolved}")

    logger.debug(f"Sanitized definition path: {resolved}")
    return resolved


def sanitize_run_id(run_id: str) -> str:
    """
    Sanitize and validate run ID.

    Run IDs must be alphanumeric with hyphens only, 8-64 characters.

    Raises:
        ToolError: If run ID format is invalid
    """
    if not isinstance(run_id, str) or not _RUN_ID_PATTERN.match(run_id):
        raise ToolError(
            f"Invalid run ID '{run_id}': must be 8-64 alphanumeric characters or hyphens"
        )

    return run_id


def sanitize_stage_name(stage: str) -> str:
    """
    Validate a stage name used to build a log path.

    Raises:
        ToolError: If the name could escape the logs directory
    """
    if not isinstance(stage, str) or not STAGE_NAME_PATTERN.match(stage):
        raise ToolError(f"Invalid stage name '{stage}'")
    return stage


def sanitize_attempt(attempt: str | int) -> str:
    """
    Validate an attempt selector: a number (1-99) or 'rollback'.

    Raises:
        ToolError: If the selector is invalid
    """
    value = str(attempt).strip()
    if not _ATTEMPT_PATTERN.match(value):
        raise ToolError(f"Invalid attempt '{attempt}': use a number (1-99) or 'rollback'")
    return value
