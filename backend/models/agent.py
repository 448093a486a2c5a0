"""Pydantic models for declarative agent definitions."""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AgentConfig(BaseModel):
    """A declarative agent definition as loaded from YAML.

    Required keys (``id``, ``title``, ``prompt``) are optional here so that a
    structurally sound document with missing fields can still be loaded and
    reported on by validation. Unknown keys are kept.
    """

    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: str | None = None
    title: str | None = None
    prompt: str | None = None
    vars: dict[str, Any] = Field(default_factory=dict)
    bundle: str | None = None
    public: bool | None = None
    toolhouse_id: str | None = None
    schedule: str | None = None
    model: str | None = None
    timeout: Any = None
    retries: Any = None
    description: str | None = None
    version: str | None = None
    tags: list[str] | None = None


class VariableType(StrEnum):
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    EMAIL = "email"
    URL = "url"
    DATE = "date"
    NUMERIC_STRING = "numeric_string"


class Variable(BaseModel):
    """A prompt variable derived from an AgentConfig and its prompt."""

    name: str
    value: Any = None
    inferred_type: VariableType = VariableType.STRING
    required: bool = False
    description: str = ""


class ValidationResult(BaseModel):
    """Outcome of validating an AgentConfig.

    ``errors`` block execution, ``warnings`` do not.
    """

    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ParsedAgent(BaseModel):
    config: AgentConfig
    variables: list[Variable]
    validation: ValidationResult
