# shipline/pipeline/stages/__init__.py
"""
Pipeline stage implementations.

Exports the stage ABC, result types and create_stages(), which turns a
validated pipeline definition into CommandStages in execution order.
"""

from typing import TYPE_CHECKING

from shipline.pipeline.graph import StageGraph
from shipline.pipeline.stages.base import (
    PipelineStage,
    StageContext,
    StageResult,
    StageStatus,
    env_key,
)
from shipline.pipeline.stages.command import CommandStage

if TYPE_CHECKING:
    from shipline.config.schema import ShiplineConfig
    from shipline.pipeline.definition import PipelineDefinition
    from shipline.pipeline.executor import CommandExecutor


def create_stages(
    definition: "PipelineDefinition",
    executor: "CommandExecutor",
    config: "ShiplineConfig | None" = None,
) -> list[PipelineStage]:
    """
    Create command stages for a pipeline definition.

    Args:
        definition: Validated pipeline definition
        executor: CommandExecutor shared by all stages
        config: ShiplineConfig for retry/timeout defaults

    Returns:
        Stages in topological order

    Raises:
        GraphError: If the dependency graph is invalid
    """
    graph = StageGraph(definition.stages)
    return [CommandStage(spec, executor, config) for spec in graph]


__all__ = [
    "PipelineStage",
    "StageContext",
    "StageResult",
    "StageStatus",
    "CommandStage",
    "create_stages",
    "env_key",
]
