"""
Argument validation against a function's JSON-schema style parameters.

Walks objects, arrays, enums and required fields recursively and collects
every violation rather than stopping at the first.
"""

from __future__ import annotations

from typing import Any

from gemini_chat_core.types import ValidationResult


def json_type_name(value: Any) -> str:
    """JSON-schema type name for a Python value."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _matches_type(value: Any, expected: str) -> bool:
    actual = json_type_name(value)
    if expected == "number":
        return actual in ("number", "integer")
    if expected == "integer" and actual == "number":
        return float(value).is_integer()
    return actual == expected


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _validate_value(schema: dict[str, Any], value: Any, path: str, errors: list[str]) -> None:
    expected = schema.get("type")
    if expected:
        options = [t.lower() for t in (expected if isinstance(expected, list) else [expected])]
        if not any(_matches_type(value, t) for t in options):
            errors.append(f"{path}: expected {' or '.join(options)}, got {json_type_name(value)}")
            return

    enum = schema.get("enum")
    if enum is not None and value not in enum:
        errors.append(f"{path}: must be one of: {', '.join(str(v) for v in enum)}")

    if json_type_name(value) in ("integer", "number"):
        minimum = schema.get("minimum")
        maximum = schema.get("maximum")
        if minimum is not None and value < minimum:
            errors.append(f"{path}: must be >= {minimum}")
        if maximum is not None and value > maximum:
            errors.append(f"{path}: must be <= {maximum}")

    if isinstance(value, (list, tuple)):
        items = schema.get("items")
        if isinstance(items, dict):
            for i, item in enumerate(value):
                _validate_value(items, item, f"{path}[{i}]", errors)
        min_items = schema.get("minItems")
        if min_items is not None and len(value) < min_items:
            errors.append(f"{path}: expected at least {min_items} items")

    if isinstance(value, dict) and ("properties" in schema or "required" in schema):
        _validate_object(schema, value, path, errors)


def _validate_object(schema: dict[str, Any], value: dict[str, Any], path: str, errors: list[str]) -> None:
    properties: dict[str, Any] = schema.get("properties") or {}

    for name in schema.get("required") or []:
        if name not in value or value[name] is None:
            errors.append(f"Missing required parameter: {_join(path, name)}")

    for key, item in value.items():
        prop = properties.get(key)
        if prop is None:
            if schema.get("additionalProperties") is False:
                errors.append(f"{_join(path, key)}: unexpected parameter")
            continue
        if item is None and key not in (schema.get("required") or []):
            continue
        _validate_value(prop, item, _join(path, key), errors)


def validate_arguments(schema: dict[str, Any] | None, args: Any) -> ValidationResult:
    """Validate call arguments against a parameter schema.

    Returns a ValidationResult listing every violation.
    """
    if not schema:
        return ValidationResult(valid=True)
    if not isinstance(args, dict):
        return ValidationResult(
            valid=False,
            errors=[f"arguments: expected object, got {json_type_name(args)}"],
        )

    errors: list[str] = []
    _validate_object(schema, args, "", errors)
    return ValidationResult(valid=not errors, errors=errors)
