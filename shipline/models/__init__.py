# shipline/models/__init__.py
"""
Data models for shipline.

Provides Pydantic response models and internal run tracking.
"""

from shipline.models.responses import (
    CreateRunResponse,
    ListRunsResponse,
    RetryRunResponse,
    RollbackRunResponse,
    RunDetailResponse,
    RunStatusResponse,
    RunSummary,
    StageLogResponse,
    StageSummary,
    ValidatePipelineResponse,
)
from shipline.models.runs import (
    InMemoryRunStore,
    RunRecord,
    RunState,
    generate_run_id,
)
from shipline.models.store import RunStore

__all__ = [
    # Response models
    "ValidatePipelineResponse",
    "CreateRunResponse",
    "RunStatusResponse",
    "RunDetailResponse",
    "RunSummary",
    "ListRunsResponse",
    "RetryRunResponse",
    "RollbackRunResponse",
    "StageLogResponse",
    "StageSummary",
    # Run tracking
    "RunState",
    "RunRecord",
    "RunStore",
    "InMemoryRunStore",
    "generate_run_id",
]
