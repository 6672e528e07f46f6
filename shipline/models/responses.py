# shipline/models/responses.py
"""
Pydantic response models for tool outputs.

All tools (CLI and MCP) return structured responses using these models for consistency.
"""

from pydantic import BaseModel, Field


class ValidatePipelineResponse(BaseModel):
    """Response from validate_pipeline tool."""

    pipeline: str = Field(description="Pipeline name")
    stages: int = Field(description="Number of stages")
    order: list[str] = Field(description="Execution order")
    layers: list[list[str]] = Field(description="Stages grouped by dependency depth")
    rollback_stages: list[str] = Field(
        default_factory=list, description="Stages that declare a rollback command"
    )


class CreateRunResponse(BaseModel):
    """Response from create_run tool."""

    run_id: str = Field(description="Unique run identifier for tracking")
    pipeline: str = Field(description="Pipeline name")
    status: str = Field(description="Run status (always 'queued' for new runs)")
    stages: list[str] = Field(description="Stages in execution order")
    next_steps: str = Field(
        description="Instructions for monitoring run progress",
        default="Use check_status with run_id to monitor progress",
    )


class RunStatusResponse(BaseModel):
    """Response from check_status tool."""

    run_id: str = Field(description="Run identifier")
    pipeline: str = Field(description="Pipeline name")
    state: str = Field(
        description="Run state (queued/running/succeeded/failed/rolled_back/rollback_failed/interrupted)"
    )
    progress: float = Field(ge=0.0, le=1.0, description="Fraction of stages processed (0.0-1.0)")
    current_stage: str | None = Field(default=None, description="Current stage or phase if running")
    failed_stage: str | None = Field(default=None, description="Stage that failed the release")
    message: str | None = Field(default=None, description="Human-readable status message")
    error: str | None = Field(default=None, description="Error message if the run failed")


class StageSummary(BaseModel):
    """Per-stage result in a run."""

    name: str
    status: str
    attempts: int = 0
    exit_code: int | None = None
    duration: float = 0.0
    outputs: dict = Field(default_factory=dict)
    error: str | None = None
    log_path: str | None = None
    allowed_failure: bool = False


class RunDetailResponse(BaseModel):
    """Response from get_run tool."""

    run_id: str
    pipeline: str
    state: str
    branch: str | None = None
    created_at: str
    updated_at: str | None = None
    failed_stage: str | None = None
    error: str | None = None
    stages: list[StageSummary] = Field(default_factory=list)
    rollbacks: list[StageSummary] = Field(default_factory=list)


class RunSummary(BaseModel):
    """Summary of a single run for list_runs."""

    run_id: str = Field(description="Run identifier")
    pipeline: str = Field(description="Pipeline name")
    state: str = Field(description="Current run state")
    branch: str | None = Field(default=None, description="Branch the run was triggered from")
    failed_stage: str | None = Field(default=None)
    created_at: str = Field(description="ISO 8601 creation timestamp")


class ListRunsResponse(BaseModel):
    """Response from list_runs tool."""

    runs: list[RunSummary] = Field(description="All runs, newest first")
    total: int = Field(description="Total number of runs")


class RetryRunResponse(BaseModel):
    """Response from retry_run tool."""

    run_id: str = Field(description="Run identifier")
    status: str = Field(description="New status (always 're-queued')")
    resume: bool = Field(description="Whether the run resumes from its checkpoint")
    message: str = Field(description="Human-readable message")


class RollbackRunResponse(BaseModel):
    """Response from rollback_run tool."""

    run_id: str
    state: str = Field(description="Run state after the rollback")
    rollbacks: list[StageSummary] = Field(default_factory=list)
    message: str


class StageLogResponse(BaseModel):
    """Response from get_stage_log tool."""

    run_id: str
    stage: str
    attempt: str
    log_path: str
    content: str
