# shipline/errors.py
"""
Exception hierarchy for shipline.

Stage errors carry a ``retryable`` flag consumed by the stage retry policy.
"""


class ShiplineError(Exception):
    """Base class for all shipline errors."""


class DefinitionError(ShiplineError):
    """Raised when a pipeline definition cannot be loaded or is invalid."""

    def __init__(self, message: str, source: str | None = None) -> None:
        self.source = source
        if source:
            message = f"{source}: {message}"
        super().__init__(message)


class GraphError(DefinitionError):
    """Raised when the stage dependency graph is invalid (cycles, unknown stages)."""


class RunClaimError(ShiplineError):
    """Raised when a run is no longer queued by the time a runner tries to take it."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Run {run_id} is not queued (already taken by another runner?)")


class SecretStoreError(ShiplineError):
    """Raised when a secret backend cannot be read."""


class SecretNotFoundError(SecretStoreError):
    """Raised when one or more requested secrets cannot be resolved."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = sorted(missing)
        super().__init__(f"Missing secrets: {', '.join(self.missing)}")


class StageError(ShiplineError):
    """Base class for stage execution failures."""

    retryable = False


class StageCommandError(StageError):
    """Stage command exited with a non-zero status."""

    retryable = True

    def __init__(self, exit_code: int, message: str | None = None) -> None:
        self.exit_code = exit_code
        super().__init__(message or f"Command exited with status {exit_code}")


class StageTimeoutError(StageError):
    """Stage command exceeded its timeout."""

    retryable = True

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Command timed out after {timeout:g}s")


class OutputContractError(StageError):
    """Stage did not produce its declared outputs (or produced malformed ones)."""


class QualityGateError(StageError):
    """Stage outputs did not satisfy the stage's quality gate."""


class InputResolutionError(StageError):
    """A stage input references an upstream output that is not available."""
