"""
Release pipeline engine.

Exports the definition loader, stage graph, executor, orchestrator and
rollback controller.
"""

from shipline.pipeline.checkpoint import CheckpointManager
from shipline.pipeline.definition import (
    PipelineDefinition,
    StageSpec,
    load_definition,
    parse_definition,
)
from shipline.pipeline.executor import CommandExecutor, CommandResult
from shipline.pipeline.graph import StageGraph
from shipline.pipeline.orchestrator import PipelineResult, ReleasePipeline
from shipline.pipeline.rollback import RollbackController
from shipline.pipeline.secrets import SecretStore, create_secret_store

__all__ = [
    "CheckpointManager",
    "CommandExecutor",
    "CommandResult",
    "PipelineDefinition",
    "PipelineResult",
    "ReleasePipeline",
    "RollbackController",
    "SecretStore",
    "StageGraph",
    "StageSpec",
    "create_secret_store",
    "load_definition",
    "parse_definition",
]
