# shipline/pipeline/definition.py
"""
Pipeline definition file schema.

A pipeline definition is a user-authored YAML file describing the release
stages, their dependencies, typed outputs, retry policy, quality gates and
rollback commands. Unlike the config models, definitions use extra="forbid"
so a misspelled key fails validation instead of being silently dropped.
"""

import fnmatch
import logging
import re
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from shipline.errors import DefinitionError

logger = logging.getLogger(__name__)

STAGE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")
ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
OUTPUT_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
INPUT_REF_PATTERN = re.compile(r"^([A-Za-z0-9][A-Za-z0-9_-]{0,63})\.([A-Za-z_][A-Za-z0-9_-]*)$")

Scalar = str | int | float | bool


class OutputType(str, Enum):
    """Declared type of a stage output."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"


_TRUE_WORDS = {"true", "yes", "1", "on"}
_FALSE_WORDS = {"false", "no", "0", "off"}


def coerce_output(value: str, output_type: OutputType) -> Scalar:
    """
    Coerce a raw output string to its declared type.

    Raises:
        ValueError: If the value is not valid for the type
    """
    if output_type is OutputType.STRING:
        return value
    text = value.strip()
    if output_type is OutputType.INTEGER:
        return int(text)
    if output_type is OutputType.NUMBER:
        return float(text)
    lowered = text.lower()
    if lowered in _TRUE_WORDS:
        return True
    if lowered in _FALSE_WORDS:
        return False
    raise ValueError(f"invalid boolean literal: {value!r}")


class RetryPolicy(BaseModel):
    """Per-stage retry policy (overrides config.retry)."""

    model_config = ConfigDict(extra="forbid")

    attempts: int = Field(default=1, ge=1, le=10, description="Total attempts including the first")
    backoff: float = Field(default=2.0, ge=0.0, description="Exponential backoff multiplier (s)")
    max_backoff: float = Field(default=60.0, ge=0.0, description="Maximum wait between attempts (s)")


class GateCondition(BaseModel):
    """
    A single quality gate condition on one output.

    A bare scalar in YAML means ``equals``. Numeric thresholds use min/max.
    """

    model_config = ConfigDict(extra="forbid")

    equals: Scalar | None = None
    min: float | None = None
    max: float | None = None

    @model_validator(mode="before")
    @classmethod
    def _scalar_means_equals(cls, data: Any) -> Any:
        if isinstance(data, (str, int, float, bool)):
            return {"equals": data}
        return data

    @model_validator(mode="after")
    def _at_least_one(self) -> "GateCondition":
        if self.equals is None and self.min is None and self.max is None:
            raise ValueError("gate condition needs equals, min or max")
        return self

    def check(self, value: Scalar) -> str | None:
        """Return a failure reason, or None if the value passes."""
        if self.equals is not None:
            expected = self.equals
            if isinstance(value, str) and not isinstance(expected, str):
                expected = str(expected).lower() if isinstance(expected, bool) else str(expected)
            if value != expected:
                return f"expected {self.equals!r}, got {value!r}"
        if self.min is not None or self.max is not None:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return f"threshold needs a numeric output, got {value!r}"
            if self.min is not None and value < self.min:
                return f"{value!r} is below minimum {self.min:g}"
            if self.max is not None and value > self.max:
                return f"{value!r} is above maximum {self.max:g}"
        return None


class StageSpec(BaseModel):
    """One stage of a release pipeline."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., description="Unique stage identifier")
    run: str = Field(..., min_length=1, description="Shell command to execute")
    description: str | None = Field(default=None, description="Human-readable summary")
    needs: list[str] = Field(default_factory=list, description="Stages that must succeed first")
    inputs: dict[str, str] = Field(
        default_factory=dict,
        description="Env var name -> 'stage.output' reference to an upstream output",
    )
    outputs: dict[str, OutputType] = Field(
        default_factory=dict, description="Declared outputs and their types"
    )
    secrets: list[str] = Field(
        default_factory=list, description="Secret names resolved just before the stage runs"
    )
    env: dict[str, str] = Field(default_factory=dict, description="Stage environment")
    retry: RetryPolicy | None = Field(default=None, description="Retry policy override")
    timeout: int | None = Field(default=None, ge=1, description="Per-attempt timeout (s)")
    rollback: str | None = Field(
        default=None, description="Command that reverts this stage's effect"
    )
    gate: dict[str, GateCondition] | None = Field(
        default=None, description="Quality gate: output name -> condition"
    )
    allow_failure: bool = Field(
        default=False, description="A failure of this stage does not fail the release"
    )
    working_dir: str | None = Field(default=None, description="Working directory for commands")

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        if not STAGE_NAME_PATTERN.match(value):
            raise ValueError(
                f"invalid stage name {value!r}: use letters, digits, '-' or '_' (max 64)"
            )
        return value

    @field_validator("outputs", mode="before")
    @classmethod
    def _list_means_strings(cls, value: Any) -> Any:
        if isinstance(value, list):
            return {name: OutputType.STRING.value for name in value}
        return value

    @field_validator("outputs")
    @classmethod
    def _valid_output_names(cls, value: dict[str, OutputType]) -> dict[str, OutputType]:
        for key in value:
            if not OUTPUT_NAME_PATTERN.match(key):
                raise ValueError(f"invalid output name {key!r}")
        return value

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {k: v if isinstance(v, str) else _yaml_scalar_to_str(v) for k, v in value.items()}
        return value

    @field_validator("env", "inputs")
    @classmethod
    def _valid_env_names(cls, value: dict[str, str]) -> dict[str, str]:
        for key in value:
            if not ENV_NAME_PATTERN.match(key):
                raise ValueError(f"invalid environment variable name {key!r}")
        return value

    @field_validator("inputs")
    @classmethod
    def _valid_input_refs(cls, value: dict[str, str]) -> dict[str, str]:
        for key, ref in value.items():
            if not INPUT_REF_PATTERN.match(ref):
                raise ValueError(f"input {key!r} must reference 'stage.output', got {ref!r}")
        return value

    @field_validator("secrets")
    @classmethod
    def _valid_secret_names(cls, value: list[str]) -> list[str]:
        for name in value:
            if not ENV_NAME_PATTERN.match(name):
                raise ValueError(f"invalid secret name {name!r}")
        return value

    @model_validator(mode="after")
    def _gate_on_declared_outputs(self) -> "StageSpec":
        for key in self.gate or {}:
            if key not in self.outputs:
                raise ValueError(f"gate key {key!r} is not a declared output of stage {self.name!r}")
        return self

    def input_refs(self) -> dict[str, tuple[str, str]]:
        """Map env var name -> (stage, output) for each input."""
        refs = {}
        for key, ref in self.inputs.items():
            stage, output = ref.split(".", 1)
            refs[key] = (stage, output)
        return refs


class TriggerSpec(BaseModel):
    """Branches a pipeline is allowed to release from."""

    model_config = ConfigDict(extra="forbid")

    branches: list[str] = Field(
        default_factory=list, description="Glob patterns; empty means any branch"
    )

    def matches(self, branch: str | None) -> bool:
        """True if the branch may trigger this pipeline."""
        if branch is None or not self.branches:
            return True
        return any(fnmatch.fnmatchcase(branch, pattern) for pattern in self.branches)


class PipelineDefinition(BaseModel):
    """Root of a pipeline definition file."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., description="Pipeline identifier")
    description: str | None = Field(default=None)
    trigger: TriggerSpec = Field(default_factory=TriggerSpec)
    env: dict[str, str] = Field(default_factory=dict, description="Environment for every stage")
    fail_fast: bool = Field(
        default=True, description="Skip all remaining stages after the first blocking failure"
    )
    rollback_on_failure: bool = Field(
        default=True, description="Revert completed stages when the release fails"
    )
    stages: list[StageSpec] = Field(..., min_length=1)

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        if not STAGE_NAME_PATTERN.match(value):
            raise ValueError(f"invalid pipeline name {value!r}")
        return value

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {k: v if isinstance(v, str) else _yaml_scalar_to_str(v) for k, v in value.items()}
        return value

    def stage(self, name: str) -> StageSpec:
        for spec in self.stages:
            if spec.name == name:
                return spec
        raise KeyError(name)


def _yaml_scalar_to_str(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err["loc"])
        parts.append(f"{location}: {err['msg']}" if location else err["msg"])
    return "; ".join(parts)


def parse_definition(data: Any, source: str = "<memory>") -> PipelineDefinition:
    """
    Validate an already-loaded mapping as a pipeline definition.

    Raises:
        DefinitionError: If the data is not a valid definition
    """
    if not isinstance(data, dict):
        raise DefinitionError("pipeline definition must be a mapping", source=source)
    try:
        return PipelineDefinition.model_validate(data)
    except ValidationError as e:
        raise DefinitionError(_format_validation_error(e), source=source) from e


def load_definition(path: str | Path) -> PipelineDefinition:
    """
    Load and validate a pipeline definition YAML file.

    Args:
        path: Path to the definition file

    Returns:
        Validated PipelineDefinition

    Raises:
        DefinitionError: If the file is missing, unparsable or invalid
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise DefinitionError(f"cannot read definition: {e.strerror or e}", source=str(path)) from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise DefinitionError(f"invalid YAML: {e}", source=str(path)) from e

    definition = parse_definition(data, source=str(path))
    logger.info(f"Loaded pipeline '{definition.name}' ({len(definition.stages)} stages) from {path}")
    return definition
