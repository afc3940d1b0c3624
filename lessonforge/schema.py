"""
schema.py - Schema-driven decoding of LLM JSON with per-field defaults.

Parsed model output is untrusted: fields go missing, arrays arrive as
strings, numbers arrive as "4". decode_with_defaults() walks the data
alongside a JSON Schema (Draft 2020-12) and returns a Decoded value in
which every declared field is present:

- a missing or invalid field takes the schema's "default", else an empty
  value for its type ("" / 0 / false / [] / {}); optional fields without
  a default are omitted
- scalar leaves are coerced where that is unambiguous (str -> int/float/bool,
  whitespace trimmed) and checked with jsonschema
- array items that do not fit the item schema are dropped

Every substitution is recorded in Decoded.errors so callers can see how
much was repaired. Only a top-level value of the wrong shape is fatal
(SchemaDecodeError).
"""

import copy
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator

_TYPE_DEFAULTS = {
    "string": "",
    "integer": 0,
    "number": 0,
    "boolean": False,
    "array": [],
    "null": None,
}


class SchemaDecodeError(ValueError):
    """The decoded value does not even have the top-level shape the schema requires."""
    pass


@dataclass(frozen=True)
class Decoded:
    """Result of a decode: the repaired value plus what had to be repaired."""
    value: Any
    errors: tuple[str, ...] = ()

    @property
    def clean(self) -> bool:
        return not self.errors


def load_schema(schema_path: Path) -> dict:
    """Load a JSON Schema file and check that the schema itself is valid."""
    with open(schema_path, encoding="utf-8") as f:
        schema = json.load(f)
    Draft202012Validator.check_schema(schema)
    return schema


def decode_with_defaults(data: Any, schema: dict) -> Decoded:
    """
    Decode data against schema, filling defaults for anything unusable.

    Raises:
        SchemaDecodeError: If the top-level value has the wrong type
    """
    defs = schema.get("$defs", {})
    root = _resolve(schema, defs)
    root_type = root.get("type")
    if root_type == "object" and not isinstance(data, dict):
        raise SchemaDecodeError(f"Expected a JSON object, got {type(data).__name__}")
    if root_type == "array" and not isinstance(data, list):
        raise SchemaDecodeError(f"Expected a JSON array, got {type(data).__name__}")

    errors: list[str] = []
    value = _decode(data, root, defs, "$", errors)
    return Decoded(value=value, errors=tuple(errors))


def default_for(node: dict, defs: dict | None = None) -> Any:
    """Named default for a schema node: its 'default', else an empty value of its type."""
    defs = defs or {}
    node = _resolve(node, defs)
    if "default" in node:
        return copy.deepcopy(node["default"])
    node_type = _primary_type(node)
    if node_type == "object":
        return _decode({}, node, defs, "$", [])
    return copy.deepcopy(_TYPE_DEFAULTS.get(node_type))


def _decode(data: Any, node: dict, defs: dict, path: str, errors: list[str]) -> Any:
    node = _resolve(node, defs)
    node_type = _primary_type(node)

    if node_type == "object":
        if not isinstance(data, dict):
            errors.append(f"{path}: expected object, got {type(data).__name__}")
            return default_for(node, defs)
        properties = node.get("properties", {})
        required = set(node.get("required", []))
        out = {}
        for name, sub in properties.items():
            child_path = f"{path}.{name}"
            if data.get(name) is not None:
                out[name] = _decode(data[name], sub, defs, child_path, errors)
            elif "default" in _resolve(sub, defs) or name in required:
                if name in required:
                    errors.append(f"{child_path}: missing, using default")
                out[name] = default_for(sub, defs)
        return out

    if node_type == "array":
        if isinstance(data, str):
            data = _string_to_list(data)
        if not isinstance(data, list):
            errors.append(f"{path}: expected array, got {type(data).__name__}")
            return default_for(node, defs)
        items = node.get("items")
        if not isinstance(items, dict):
            return list(data)
        out = []
        for i, item in enumerate(data):
            item_path = f"{path}[{i}]"
            item_node = _resolve(items, defs)
            if _primary_type(item_node) == "object" and not isinstance(item, dict):
                errors.append(f"{item_path}: dropped non-object item")
                continue
            decoded = _decode(item, item_node, defs, item_path, errors)
            if _primary_type(item_node) not in ("object", "array") and not _is_valid(decoded, item_node):
                errors.append(f"{item_path}: dropped invalid item")
                continue
            if decoded == "" and _primary_type(item_node) == "string":
                continue  # blank strings carry nothing
            out.append(decoded)
        return out

    value = _coerce_scalar(data, node_type)
    if _is_valid(value, node):
        return value
    errors.append(f"{path}: invalid value {data!r}, using default")
    return default_for(node, defs)


def _coerce_scalar(value: Any, expected_type: str | None) -> Any:
    """Best-effort leaf coercion; returns the original value when not applicable."""
    if expected_type == "string":
        if isinstance(value, str):
            return value.strip()
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    if expected_type == "integer":
        if isinstance(value, str):
            try:
                return int(value.strip())
            except (ValueError, OverflowError):
                return value
        if isinstance(value, float) and value == value and value == int(value):  # NaN guard
            return int(value)
        return value

    if expected_type == "number":
        if isinstance(value, str):
            try:
                return float(value.strip())
            except (ValueError, OverflowError):
                return value
        return value

    if expected_type == "boolean":
        if isinstance(value, str):
            lower = value.strip().lower()
            if lower == "true":
                return True
            if lower == "false":
                return False
        return value

    return value


def _string_to_list(text: str) -> Any:
    """A JSON array encoded as a string, else the string as a single item."""
    try:
        parsed = json.loads(text)
        if isinstance(parsed, list):
            return parsed
    except (json.JSONDecodeError, ValueError):
        pass
    return [text] if text.strip() else []


def _is_valid(value: Any, node: dict) -> bool:
    return Draft202012Validator(node).is_valid(value)


def _primary_type(node: dict) -> str | None:
    node_type = node.get("type")
    if isinstance(node_type, list):
        non_null = [t for t in node_type if t != "null"]
        return non_null[0] if non_null else "null"
    return node_type


def _resolve(node: dict, defs: dict) -> dict:
    """Resolve local '#/$defs/...' references."""
    seen = set()
    while isinstance(node, dict) and "$ref" in node:
        ref = node["$ref"]
        if ref in seen or not ref.startswith("#/$defs/"):
            break  # Circular or non-local reference guard
        seen.add(ref)
        target = defs.get(ref[len("#/$defs/"):])
        if target is None:
            break
        node = target
    return node
