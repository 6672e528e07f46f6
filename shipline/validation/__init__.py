"""Input validation and sanitization utilities."""

from .sanitize import (
    sanitize_attempt,
    sanitize_definition_path,
    sanitize_run_id,
    sanitize_stage_name,
)

__all__ = [
    "sanitize_definition_path",
    "sanitize_run_id",
    "sanitize_stage_name",
    "sanitize_attempt",
]
