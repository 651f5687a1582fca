"""
Tool argument validation against a tool's advertised input schema.

Covers the JSON Schema subset tool providers use in practice. Keywords that
are not understood are ignored, so an unusual schema never blocks a call
the provider itself would accept.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Union


@dataclass(frozen=True)
class Valid:
    """Arguments satisfy the schema."""

    ok: bool = True


@dataclass(frozen=True)
class Invalid:
    """Arguments violate the schema; ``errors`` lists each violation."""

    errors: List[str] = field(default_factory=list)
    ok: bool = False


ValidationResult = Union[Valid, Invalid]


def _is_type(value: Any, type_name: str) -> bool:
    if type_name == "object":
        return isinstance(value, dict)
    if type_name == "array":
        return isinstance(value, list)
    if type_name == "string":
        return isinstance(value, str)
    if type_name == "boolean":
        return isinstance(value, bool)
    if type_name == "integer":
        if isinstance(value, float):
            return value.is_integer()
        return isinstance(value, int) and not isinstance(value, bool)
    if type_name == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if type_name == "null":
        return value is None
    return True  # unknown type names are not enforced


def _check(value: Any, schema: Dict[str, Any], path: str, errors: List[str]) -> None:
    if not isinstance(schema, dict):
        return

    expected = schema.get("type")
    if expected is not None:
        names = expected if isinstance(expected, list) else [expected]
        if not any(_is_type(value, name) for name in names):
            errors.append(f"{path}: expected {' or '.join(names)}, got {type(value).__name__}")
            return

    if "enum" in schema and value not in schema["enum"]:
        errors.append(f"{path}: {value!r} is not one of {schema['enum']!r}")

    if isinstance(value, str):
        if "minLength" in schema and len(value) < schema["minLength"]:
            errors.append(f"{path}: shorter than {schema['minLength']} characters")
        if "maxLength" in schema and len(value) > schema["maxLength"]:
            errors.append(f"{path}: longer than {schema['maxLength']} characters")

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if "minimum" in schema and value < schema["minimum"]:
            errors.append(f"{path}: {value} is less than {schema['minimum']}")
        if "maximum" in schema and value > schema["maximum"]:
            errors.append(f"{path}: {value} is greater than {schema['maximum']}")

    if isinstance(value, list) and isinstance(schema.get("items"), dict):
        for i, item in enumerate(value):
            _check(item, schema["items"], f"{path}[{i}]", errors)

    if isinstance(value, dict):
        properties = schema.get("properties") or {}
        for name in schema.get("required") or []:
            if name not in value:
                errors.append(f"{path}.{name}: required property missing")
        for name, item in value.items():
            if name in properties:
                _check(item, properties[name], f"{path}.{name}", errors)
            elif schema.get("additionalProperties") is False:
                errors.append(f"{path}.{name}: unexpected property")


_JSON_SCALARS = (str, int, float, bool, type(None))


def _check_encodable(value: Any, path: str, errors: List[str]) -> None:
    """Values must survive ``json.dumps``; YAML dates and sets do not."""
    if isinstance(value, _JSON_SCALARS):
        return
    if isinstance(value, (list, tuple)):
        for i, item in enumerate(value):
            _check_encodable(item, f"{path}[{i}]", errors)
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                errors.append(f"{path}: key {key!r} is not a string")
                continue
            _check_encodable(item, f"{path}.{key}", errors)
        return
    errors.append(f"{path}: {type(value).__name__} is not JSON-encodable")


def validate_arguments(schema: Dict[str, Any], arguments: Any) -> ValidationResult:
    """
    Validate tool ``arguments`` against ``schema``.

    An empty schema accepts any mapping. Arguments must always be a mapping
    of JSON-encodable values.
    """
    if not isinstance(arguments, dict):
        return Invalid([f"arguments: expected object, got {type(arguments).__name__}"])

    errors: List[str] = []
    _check_encodable(arguments, "arguments", errors)
    if errors:
        return Invalid(errors)
    _check(arguments, schema or {}, "arguments", errors)
    return Invalid(errors) if errors else Valid()
