# shipline/pipeline/retry.py
"""Retry logic for stage commands with exponential backoff."""

import logging

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from shipline.errors import StageError
from shipline.pipeline.definition import RetryPolicy

logger = logging.getLogger(__name__)


def is_retryable(exception: BaseException) -> bool:
    """
    Returns True if the exception should be retried.

    Retryable conditions:
    - StageCommandError (non-zero exit, possibly transient)
    - StageTimeoutError

    Contract, quality gate, input and secret failures are deterministic and
    are never retried.
    """
    return isinstance(exception, StageError) and exception.retryable


def stage_retrying(policy: RetryPolicy) -> AsyncRetrying:
    """Build a tenacity AsyncRetrying for one stage execution."""
    return AsyncRetrying(
        stop=stop_after_attempt(policy.attempts),
        wait=wait_exponential(multiplier=policy.backoff, max=policy.max_backoff),
        retry=retry_if_exception(is_retryable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
