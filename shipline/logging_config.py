# shipline/logging_config.py
"""
Stderr-only logging configuration.

CRITICAL: the MCP server uses stdio transport and CLI output is meant to be
pipeable, so ALL logging must go to stderr. No stdout handlers.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

_VERBOSITY_LEVELS = {
    "quiet": logging.WARNING,
    "normal": logging.INFO,
    "verbose": logging.DEBUG,
}

CLI_FORMAT = "%(asctime)s  %(levelname)-7s  %(message)s"


class JsonFormatter(logging.Formatter):
    """Formats log records as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON line."""
        log_data: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        if record.exc_info:
            log_data["exc"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def level_for(verbosity: str) -> int:
    """Map a config verbosity name to a logging level (unknown names -> INFO)."""
    return _VERBOSITY_LEVELS.get(verbosity, logging.INFO)


def configure_logging(verbosity: str = "normal", json_format: bool = True) -> logging.Handler:
    """
    Configure root logging to stderr only.

    Clears existing handlers to prevent stdout pollution.

    Args:
        verbosity: "quiet", "normal" or "verbose"
        json_format: JSON lines (server/worker) or human-readable (CLI)

    Returns:
        The installed handler
    """
    handler = logging.StreamHandler(sys.stderr)
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(CLI_FORMAT, datefmt="%H:%M:%S"))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level_for(verbosity))

    for logger_name in ["fastmcp", "aiosqlite"]:
        third_party = logging.getLogger(logger_name)
        third_party.handlers.clear()
        third_party.addHandler(handler)
        third_party.setLevel(max(level_for(verbosity), logging.INFO))
        third_party.propagate = False

    return handler
