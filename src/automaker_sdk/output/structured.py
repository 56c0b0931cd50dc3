from __future__ import annotations

import json
from typing import Any, Type, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from automaker_sdk.core.exceptions import OutputParsingError

logger = structlog.get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

_OPENERS = {"{": "}", "[": "]"}
_CLOSERS = {"}", "]"}


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def _balanced_end(text: str, start: int) -> int | None:
    """Index of the bracket closing ``text[start]``, or ``None``.

    Brackets inside string literals are ignored (backslash escapes honoured);
    a mismatched closer aborts the scan.
    """
    expected: list[str] = []
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        ch = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _OPENERS:
            expected.append(_OPENERS[ch])
        elif ch in _CLOSERS:
            if not expected or expected.pop() != ch:
                return None
            if not expected:
                return index
    return None


def extract_json(text: str) -> Any | None:
    """Return the first balanced JSON object or array embedded in *text*.

    Surrounding prose is tolerated.  Candidates that never balance, or that
    balance but are not valid JSON, are skipped and scanning resumes at the
    next opening bracket.  Returns ``None`` when nothing parses.

    Example::

        >>> extract_json('noise {"a": {"b": 1}} trailing')
        {'a': {'b': 1}}
    """
    if not text:
        return None
    for start, ch in enumerate(text):
        if ch not in _OPENERS:
            continue
        end = _balanced_end(text, start)
        if end is None:
            continue
        try:
            return json.loads(text[start : end + 1])
        except json.JSONDecodeError:
            continue
    return None


parse_json_from_text = extract_json


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _matches_type(value: Any, schema_type: str) -> bool:
    if schema_type == "object":
        return isinstance(value, dict)
    if schema_type == "array":
        return isinstance(value, list)
    if schema_type == "string":
        return isinstance(value, str)
    if schema_type == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if schema_type == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if schema_type == "boolean":
        return isinstance(value, bool)
    if schema_type == "null":
        return value is None
    return True


def schema_errors(value: Any, schema: dict[str, Any] | None, path: str = "$") -> list[str]:
    """Shallow-recursive JSON-schema check.

    Covers object required keys, property types, array item schemas,
    primitive types and ``enum`` membership.  Lenient where the
    schema is silent: untyped properties accept anything, arrays without
    ``items`` accept any elements, and ``null`` is accepted for nested
    properties.
    """
    if not isinstance(schema, dict) or not schema:
        return []

    errors: list[str] = []
    if "enum" in schema and value not in schema["enum"]:
        errors.append(f"{path}: {value!r} is not one of {schema['enum']}")
        return errors

    schema_type = schema.get("type")
    if schema_type is not None:
        types = schema_type if isinstance(schema_type, list) else [schema_type]
        if not any(_matches_type(value, t) for t in types):
            errors.append(f"{path}: expected {'|'.join(types)}, got {type(value).__name__}")
            return errors

    if isinstance(value, dict):
        properties = schema.get("properties") or {}
        for key in schema.get("required") or []:
            if key not in value:
                errors.append(f"{path}: missing required key '{key}'")
        for key, prop_schema in properties.items():
            if key in value and value[key] is not None:
                errors.extend(schema_errors(value[key], prop_schema, f"{path}.{key}"))
    elif isinstance(value, list) and isinstance(schema.get("items"), dict):
        for index, item in enumerate(value):
            errors.extend(schema_errors(item, schema["items"], f"{path}[{index}]"))
    return errors


def validate_against_schema(value: Any, schema: dict[str, Any] | None) -> bool:
    return not schema_errors(value, schema)


def finalize_structured_output(text: str, schema: dict[str, Any] | None) -> Any | None:
    """Extract and validate structured output from accumulated response text.

    Pure: returns the parsed value when it validates against *schema*,
    otherwise ``None``.
    """
    value = extract_json(text)
    if value is None:
        logger.warning("structured_output_not_found", length=len(text))
        return None
    errors = schema_errors(value, schema)
    if errors:
        logger.warning("structured_output_invalid", errors=errors[:5])
        return None
    return value


# ---------------------------------------------------------------------------
# Prompt construction
# ---------------------------------------------------------------------------


def _describe_property(prop: dict[str, Any]) -> str:
    prop_type = prop.get("type") or "unknown"
    if isinstance(prop_type, list):
        prop_type = " | ".join(str(t) for t in prop_type)
    desc = str(prop_type)
    if prop.get("enum"):
        desc += f" (one of: {', '.join(str(v) for v in prop['enum'])})"
    if prop.get("description"):
        desc += f" - {prop['description']}"
    return desc


def describe_schema(schema: dict[str, Any], indent: int = 0) -> str:
    """Human-readable outline of *schema* (``key: type (one of: ...) - desc (required)``)."""
    prefix = "  " * indent
    lines: list[str] = []
    if schema.get("type") == "object" and schema.get("properties"):
        required = set(schema.get("required") or [])
        for key, prop in schema["properties"].items():
            line = f"{prefix}{key}: {_describe_property(prop)}"
            if key in required:
                line += " (required)"
            lines.append(line + "\n")
            if prop.get("type") == "object" and prop.get("properties"):
                lines.append(f"{prefix}  Properties:\n")
                lines.append(describe_schema(prop, indent + 2))
    elif schema.get("type") == "array" and isinstance(schema.get("items"), dict):
        items = schema["items"]
        lines.append(f"{prefix}Array of: {_describe_property(items)}\n")
        if items.get("type") == "object" and items.get("properties"):
            lines.append(describe_schema(items, indent + 1))
    return "".join(lines)


def build_structured_output_prompt(base_prompt: str, schema: dict[str, Any]) -> str:
    return (
        f"{base_prompt}\n\n"
        "IMPORTANT: You must respond with valid JSON that matches this schema:\n"
        f"{describe_schema(schema)}\n\n"
        "Your response must be ONLY the JSON object, with no additional text, "
        "markdown formatting, or explanation."
    )


# ---------------------------------------------------------------------------
# Pydantic bridge
# ---------------------------------------------------------------------------


class StructuredOutput:
    """Utilities for extracting structured (Pydantic) data from agent responses."""

    @staticmethod
    def schema_for(model: Type[T]) -> dict[str, Any]:
        return model.model_json_schema()

    @staticmethod
    def schema_prompt(base_prompt: str, model: Type[T]) -> str:
        """Append JSON-only instructions describing *model* to *base_prompt*."""
        return build_structured_output_prompt(base_prompt, model.model_json_schema())

    @staticmethod
    def parse(response: str | Any, model: Type[T]) -> T:
        """Validate *response* against *model*.

        *response* may be an already-decoded value (native structured output)
        or free text containing a JSON object.

        Raises:
            OutputParsingError: If no JSON is found or Pydantic validation fails.
        """
        data = extract_json(response) if isinstance(response, str) else response
        if data is None:
            preview = response[:200] if isinstance(response, str) else repr(response)
            raise OutputParsingError(f"No JSON found in response: {preview}")
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise OutputParsingError(
                f"Failed to parse response as {model.__name__}: {exc}"
            ) from exc
