"""Declarative agent definitions: parsing, variables, validation and export.

This module provides:
- AgentConfigService: parse / validate / serialize YAML agent definitions,
  extract prompt variables and substitute them
- ParseError: raised for documents that cannot become an AgentConfig
- extract_prompt_variables: placeholder scan shared with the engine

Prompts may reference variables in three interchangeable syntaxes,
``{name}``, ``{{name}}`` and ``${name}``; all resolve to the same namespace.
"""

import datetime
import json
import re
import secrets
import string
from collections.abc import Iterable, Mapping
from typing import Any

import structlog
import yaml
from pydantic import ValidationError as PydanticValidationError
from yaml.constructor import ConstructorError

from config import settings
from models.agent import (
    AgentConfig,
    ParsedAgent,
    ValidationResult,
    Variable,
    VariableType,
)

logger = structlog.get_logger()

REQUIRED_FIELDS: tuple[str, ...] = ("id", "title", "prompt")
OPTIONAL_FIELDS: tuple[str, ...] = (
    "vars",
    "bundle",
    "public",
    "toolhouse_id",
    "schedule",
    "description",
    "version",
    "tags",
    "timeout",
    "retries",
    "model",
)

# Serialization order; unknown keys follow alphabetically.
KEY_ORDER: tuple[str, ...] = (
    "id",
    "title",
    "description",
    "prompt",
    "vars",
    "bundle",
    "public",
    "toolhouse_id",
    "schedule",
    "model",
    "timeout",
    "retries",
    "version",
    "tags",
)

DEFAULT_BUNDLE = "default"
DEFAULT_TOOLHOUSE_ID = "default"

OMITTED_WHEN_EMPTY: tuple[str, ...] = ("schedule", "description", "version", "tags")

FIELD_DESCRIPTIONS: dict[str, str] = {
    "id": "Unique identifier for the agent (alphanumeric, hyphens, underscores)",
    "title": "Human-readable name for the agent",
    "prompt": "The instructions for the agent (can include {variable} placeholders)",
    "vars": "Object containing variable definitions used in the prompt",
    "bundle": 'Bundle name for organizing agents (default: "default")',
    "public": "Whether the agent is publicly accessible (default: true)",
    "toolhouse_id": 'Tool provider identifier for the agent (default: "default")',
    "schedule": "Cron expression for scheduled execution (optional)",
    "description": "Detailed description of the agent's purpose",
    "version": "Version identifier for the agent",
    "tags": "Array of tags for categorizing the agent",
    "timeout": "Maximum execution time in seconds (1-3600)",
    "retries": "Number of retry attempts on failure (0-10)",
    "model": "AI model to use (e.g., gpt-4o, gpt-4o-mini)",
}

_NAME = r"[A-Za-z_][A-Za-z0-9_]*"
_PLACEHOLDER_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\{(" + _NAME + r")\}"),
    re.compile(r"\{\{(" + _NAME + r")\}\}"),
    re.compile(r"\$\{(" + _NAME + r")\}"),
)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_URL_RE = re.compile(r"^https?://.+")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")
_DIGITS_RE = re.compile(r"^\d+$")

# (low, high) bounds for minute, hour, day of month, month, day of week
_CRON_BOUNDS: tuple[tuple[int, int], ...] = ((0, 59), (0, 23), (1, 31), (1, 12), (0, 6))
_CRON_ITEM_RE = re.compile(r"^(\*|\d+(?:-\d+)?)(?:/(\d+))?$")

_NAME_DESCRIPTIONS: dict[str, str] = {
    "topic": "The main subject or theme",
    "name": "A name or identifier",
    "title": "A title or heading",
    "description": "A detailed description",
    "url": "A web URL or link",
    "email": "An email address",
    "date": "A date value",
    "count": "A numeric count",
    "limit": "A maximum limit",
    "text": "Text content",
    "content": "Main content",
    "message": "A message or communication",
    "id": "A unique identifier",
    "path": "A file or URL path",
    "key": "A key or password",
    "token": "An access token",
}

_TYPE_DESCRIPTIONS: dict[VariableType, str] = {
    VariableType.STRING: "A text value",
    VariableType.NUMBER: "A numeric value",
    VariableType.INTEGER: "A whole number",
    VariableType.BOOLEAN: "A true/false value",
    VariableType.ARRAY: "A list of items",
    VariableType.OBJECT: "A structured object",
    VariableType.EMAIL: "An email address",
    VariableType.URL: "A web URL",
    VariableType.DATE: "A date value",
}

UNDEFINED_VARIABLE_DESCRIPTION = "Variable used in prompt but not defined in vars"


class ParseError(ValueError):
    """Raised when agent definition text cannot be turned into an AgentConfig.

    Attributes:
        line: 1-based line of a YAML syntax error, if known
        column: 1-based column of a YAML syntax error, if known
    """

    def __init__(self, message: str, line: int | None = None, column: int | None = None) -> None:
        super().__init__(message)
        self.line = line
        self.column = column


class _StrictSafeLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys."""

    def construct_mapping(self, node: yaml.MappingNode, deep: bool = False) -> dict[Any, Any]:
        seen: set[Any] = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            try:
                duplicate = key in seen
            except TypeError:
                # unhashable keys are reported by the base constructor
                continue
            if duplicate:
                raise ConstructorError(
                    "while constructing a mapping",
                    node.start_mark,
                    f"found duplicate key {key!r}",
                    key_node.start_mark,
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


class _BlockStyleDumper(yaml.SafeDumper):
    """SafeDumper that writes multi-line strings as literal blocks."""


def _represent_str(dumper: yaml.SafeDumper, data: str) -> yaml.ScalarNode:
    # clean_yaml_content collapses blank-line runs and trims the document,
    # which would change these values inside a literal block.
    if "\n\n\n" in data or data.endswith("\n\n") or "\r" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style='"')
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


_BlockStyleDumper.add_representer(str, _represent_str)


def clean_yaml_content(content: str) -> str:
    """Strip a BOM, normalize line endings and collapse runs of blank lines."""
    cleaned = content.removeprefix("\ufeff")
    cleaned = cleaned.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def extract_prompt_variables(prompt: str | None) -> list[str]:
    """Return placeholder names used in a prompt, de-duplicated."""
    if not prompt:
        return []
    names: list[str] = []
    for pattern in _PLACEHOLDER_PATTERNS:
        for match in pattern.finditer(prompt):
            if match.group(1) not in names:
                names.append(match.group(1))
    return names


def infer_type(value: Any) -> VariableType:
    """Infer a variable type from its value."""
    if value is None:
        return VariableType.STRING
    if isinstance(value, bool):
        return VariableType.BOOLEAN
    if isinstance(value, int):
        return VariableType.INTEGER
    if isinstance(value, float):
        return VariableType.INTEGER if value.is_integer() else VariableType.NUMBER
    if isinstance(value, (list, tuple)):
        return VariableType.ARRAY
    if isinstance(value, Mapping):
        return VariableType.OBJECT
    if isinstance(value, (datetime.date, datetime.datetime)):
        return VariableType.DATE
    if isinstance(value, str):
        if _EMAIL_RE.match(value):
            return VariableType.EMAIL
        if _URL_RE.match(value):
            return VariableType.URL
        if _DATE_RE.match(value):
            return VariableType.DATE
        if _DIGITS_RE.match(value):
            return VariableType.NUMERIC_STRING
    return VariableType.STRING


def describe_variable(name: str, value: Any) -> str:
    """Contextual description from the variable's name, falling back to its type."""
    lowered = name.lower()
    for fragment, description in _NAME_DESCRIPTIONS.items():
        if fragment in lowered:
            return description
    return _TYPE_DESCRIPTIONS.get(infer_type(value), "A configurable value")


def stringify_value(value: Any) -> str:
    """String form of a variable value as it appears in a rendered prompt."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple, Mapping)):
        return json.dumps(value, default=str)
    return str(value)


def is_valid_cron(expression: str) -> bool:
    """Check a 5-field cron expression (minute hour day month weekday).

    Each field is a comma list of ``*``, ``N`` or ``N-M``, optionally
    followed by ``/step``.
    """
    fields = expression.split()
    if len(fields) != len(_CRON_BOUNDS):
        return False
    for field, (low, high) in zip(fields, _CRON_BOUNDS, strict=True):
        for item in field.split(","):
            match = _CRON_ITEM_RE.match(item)
            if match is None:
                return False
            base, step = match.groups()
            if step is not None and int(step) < 1:
                return False
            if base == "*":
                continue
            start, _, end = base.partition("-")
            first = int(start)
            last = int(end) if end else first
            if not (low <= first <= high and low <= last <= high and first <= last):
                return False
    return True


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class AgentConfigService:
    """Parses, validates, normalizes and serializes agent definitions.

    The service is stateless apart from the list of known model names used
    for the unrecognized-model warning.

    Usage:
        >>> service = AgentConfigService()
        >>> config = service.parse(open("agent.yaml").read())
        >>> report = service.validate(config)
        >>> prompt = service.substitute(config.prompt, config.vars)
    """

    def __init__(self, known_models: Iterable[str] | None = None) -> None:
        if known_models is None:
            known_models = settings.known_models
        self.known_models = list(known_models)

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse(self, raw_text: str) -> AgentConfig:
        """Deserialize YAML text into an AgentConfig.

        Args:
            raw_text: The agent definition as uploaded

        Returns:
            The parsed config with defaults applied

        Raises:
            ParseError: On YAML syntax errors, duplicate keys, a non-mapping
                root or fields of the wrong shape
        """
        cleaned = clean_yaml_content(raw_text)
        try:
            # The closing line break keeps the newline of a trailing literal block.
            data = yaml.load(cleaned + "\n", Loader=_StrictSafeLoader)  # noqa: S506
        except yaml.MarkedYAMLError as e:
            mark = e.problem_mark
            line = mark.line + 1 if mark is not None else None
            column = mark.column + 1 if mark is not None else None
            logger.warning("agent_yaml_syntax_error", error=str(e), line=line, column=column)
            raise ParseError(f"Invalid YAML: {e.problem or e}", line=line, column=column) from e
        except yaml.YAMLError as e:
            logger.warning("agent_yaml_syntax_error", error=str(e))
            raise ParseError(f"Invalid YAML: {e}") from e

        if not isinstance(data, dict):
            raise ParseError("Invalid YAML structure: Expected an object at root level")

        if data.get("vars") is None:
            data["vars"] = {}
        elif not isinstance(data["vars"], dict):
            raise ParseError("Invalid YAML structure: 'vars' must be a mapping")

        try:
            config = AgentConfig.model_validate(data)
        except PydanticValidationError as e:
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
            raise ParseError(f"Invalid field types: {', '.join(fields)}") from e

        # Export omits these when empty; an empty value reads back as unset.
        for key in OMITTED_WHEN_EMPTY:
            if getattr(config, key) in ("", []):
                setattr(config, key, None)

        return self._apply_defaults(config)

    def _apply_defaults(self, config: AgentConfig) -> AgentConfig:
        if not config.bundle:
            config.bundle = DEFAULT_BUNDLE
        if config.public is None:
            config.public = True
        if not config.toolhouse_id:
            config.toolhouse_id = DEFAULT_TOOLHOUSE_ID
        return config

    def load(self, raw_text: str) -> ParsedAgent:
        """Parse, extract variables and validate in one step."""
        config = self.parse(raw_text)
        return ParsedAgent(
            config=config,
            variables=self.extract_variables(config),
            validation=self.validate(config),
        )

    def is_valid_yaml(self, text: str) -> bool:
        """Whether the text is loadable YAML at all (any root type)."""
        try:
            yaml.load(text, Loader=_StrictSafeLoader)  # noqa: S506
        except yaml.YAMLError:
            return False
        return True

    # ------------------------------------------------------------------
    # Variables
    # ------------------------------------------------------------------

    def extract_variables(self, config: AgentConfig) -> list[Variable]:
        """Derive the variable list for a config.

        Every ``vars`` entry becomes a Variable (required when the prompt
        uses it); every prompt placeholder without a ``vars`` entry becomes a
        required, empty, flagged Variable. Sorted required-first, then by name.
        """
        prompt_names = extract_prompt_variables(config.prompt)
        variables = [
            Variable(
                name=name,
                value=value,
                inferred_type=infer_type(value),
                required=name in prompt_names,
                description=describe_variable(name, value),
            )
            for name, value in config.vars.items()
        ]
        variables.extend(
            Variable(
                name=name,
                value="",
                inferred_type=VariableType.STRING,
                required=True,
                description=UNDEFINED_VARIABLE_DESCRIPTION,
            )
            for name in prompt_names
            if name not in config.vars
        )
        return sorted(variables, key=lambda v: (not v.required, v.name))

    def substitute(self, prompt: str, values: Mapping[str, Any]) -> str:
        """Replace every placeholder syntax for each key with its value.

        Substitution is idempotent only when no value itself contains
        placeholder syntax; this is not checked.
        """
        rendered = prompt
        for key, value in values.items():
            replacement = stringify_value(value)
            escaped = re.escape(key)
            for pattern in (rf"\{{\{{{escaped}\}}\}}", rf"\$\{{{escaped}\}}", rf"\{{{escaped}\}}"):
                rendered = re.sub(pattern, lambda _m: replacement, rendered)
        return rendered

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, config: AgentConfig) -> ValidationResult:
        """Check a config, separating blocking errors from warnings."""
        errors: list[str] = []
        warnings: list[str] = []

        for field in REQUIRED_FIELDS:
            if not getattr(config, field):
                errors.append(f"Missing required field: {field}")

        if config.id:
            if not _IDENTIFIER_RE.match(config.id):
                errors.append("ID can only contain letters, numbers, hyphens, and underscores")
            if not 3 <= len(config.id) <= 100:
                errors.append("ID must be between 3 and 100 characters")

        if config.title and len(config.title) > 200:
            errors.append("Title must be between 1 and 200 characters")

        if config.prompt:
            if len(config.prompt) < 10:
                warnings.append("Prompt is very short, consider adding more detail")
            if len(config.prompt) > 10000:
                warnings.append("Prompt is very long, consider shortening for better performance")

            prompt_names = extract_prompt_variables(config.prompt)
            for name in prompt_names:
                if name not in config.vars:
                    errors.append(f'Variable "{name}" used in prompt but not defined in vars')
            for name in config.vars:
                if name not in prompt_names:
                    warnings.append(f'Variable "{name}" defined but not used in prompt')

        if config.schedule and not is_valid_cron(config.schedule):
            errors.append(f"Invalid cron schedule format: {config.schedule}")

        if config.bundle and not _IDENTIFIER_RE.match(config.bundle):
            warnings.append(
                "Bundle name should only contain letters, numbers, hyphens, and underscores"
            )

        if config.timeout is not None and not (
            is_number(config.timeout) and 1 <= config.timeout <= 3600
        ):
            errors.append("Timeout must be a number between 1 and 3600 seconds")

        if config.retries is not None and not (
            isinstance(config.retries, int)
            and not isinstance(config.retries, bool)
            and 0 <= config.retries <= 10
        ):
            errors.append("Retries must be a number between 0 and 10")

        if config.model and config.model not in self.known_models:
            warnings.append(
                f'Model "{config.model}" may not be supported. '
                f"Valid models: {', '.join(self.known_models)}"
            )

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def to_export_dict(self, config: AgentConfig) -> dict[str, Any]:
        """Ordered mapping for export, with default-valued fields omitted."""
        # Unset known fields are omitted; unknown keys are kept even when null.
        data = {
            key: value
            for key, value in config.model_dump().items()
            if value is not None or key not in AgentConfig.model_fields
        }
        data.setdefault("vars", {})
        if data.get("bundle") == DEFAULT_BUNDLE:
            del data["bundle"]
        if data.get("toolhouse_id") == DEFAULT_TOOLHOUSE_ID:
            del data["toolhouse_id"]
        if data.get("public") is True:
            del data["public"]
        for key in OMITTED_WHEN_EMPTY:
            if key in data and not data[key]:
                del data[key]

        ordered = {key: data[key] for key in KEY_ORDER if key in data}
        for key in sorted(k for k in data if k not in KEY_ORDER):
            ordered[key] = data[key]
        return ordered

    def serialize(self, config: AgentConfig) -> str:
        """Export a config back to YAML (the inverse of parse)."""
        return yaml.dump(
            self.to_export_dict(config),
            Dumper=_BlockStyleDumper,
            indent=2,
            width=120,
            sort_keys=False,
            allow_unicode=True,
            default_flow_style=False,
        )

    # ------------------------------------------------------------------
    # Templates and comparisons
    # ------------------------------------------------------------------

    def create_template(
        self,
        title: str,
        prompt: str,
        variables: Mapping[str, Any] | None = None,
    ) -> AgentConfig:
        """Create a new agent config with an id generated from the title."""
        config = AgentConfig(
            id=self.generate_id(title),
            title=title,
            prompt=prompt,
            vars=dict(variables or {}),
        )
        return self._apply_defaults(config)

    @staticmethod
    def generate_id(title: str) -> str:
        """Slugify a title (max 50 chars) and append a random 6-char suffix."""
        slug = re.sub(r"[^a-z0-9\s-]", "", title.lower())
        slug = re.sub(r"\s+", "-", slug)
        slug = re.sub(r"-+", "-", slug).strip("-")[:50]
        alphabet = string.ascii_lowercase + string.digits
        suffix = "".join(secrets.choice(alphabet) for _ in range(6))
        return f"{slug}-{suffix}" if slug else f"agent-{suffix}"

    def has_breaking_changes(self, old: AgentConfig, new: AgentConfig) -> bool:
        """An id change or a removed prompt variable breaks existing callers."""
        if old.id != new.id:
            return True
        new_names = set(extract_prompt_variables(new.prompt))
        return any(name not in new_names for name in extract_prompt_variables(old.prompt))

    def merge(self, base: AgentConfig, override: Mapping[str, Any]) -> AgentConfig:
        """Overlay ``override`` on ``base``; ``vars`` are merged key-wise."""
        data = base.model_dump()
        merged_vars = {**base.vars, **(override.get("vars") or {})}
        data.update({k: v for k, v in override.items() if k != "vars"})
        data["vars"] = merged_vars
        return AgentConfig.model_validate(data)

    def schema_info(self) -> dict[str, Any]:
        """Required/optional keys and their descriptions, for UI hints."""
        return {
            "required": list(REQUIRED_FIELDS),
            "optional": list(OPTIONAL_FIELDS),
            "descriptions": dict(FIELD_DESCRIPTIONS),
        }
