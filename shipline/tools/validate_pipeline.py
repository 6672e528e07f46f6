# shipline/tools/validate_pipeline.py
"""
validate_pipeline tool implementation.

Loads a definition file and checks its stage graph without running anything.
"""

import logging

from fastmcp.exceptions import ToolError

from shipline.errors import DefinitionError
from shipline.models.responses import ValidatePipelineResponse
from shipline.pipeline.definition import PipelineDefinition, load_definition
from shipline.pipeline.graph import StageGraph
from shipline.validation.sanitize import sanitize_definition_path

logger = logging.getLogger(__name__)


def load_validated(definition_path: str) -> tuple[PipelineDefinition, StageGraph]:
    """
    Load a definition and build its stage graph.

    Raises:
        ToolError: If the path, the YAML or the graph is invalid
    """
    path = sanitize_definition_path(definition_path)
    try:
        definition = load_definition(path)
        graph = StageGraph(definition.stages)
    except DefinitionError as e:
        raise ToolError(f"Invalid pipeline definition: {e}")
    return definition, graph


async def validate_pipeline(definition_path: str) -> dict:
    """
    Validate a pipeline definition file.

    Args:
        definition_path: Path to the YAML definition

    Returns:
        ValidatePipelineResponse as dict

    Raises:
        ToolError: If the definition is invalid
    """
    definition, graph = load_validated(definition_path)

    response = ValidatePipelineResponse(
        pipeline=definition.name,
        stages=len(graph),
        order=graph.order(),
        layers=graph.layers(),
        rollback_stages=[spec.name for spec in graph if spec.rollback],
    )

    logger.info(f"Validated pipeline '{definition.name}' ({len(graph)} stages)")
    return response.model_dump()
