"""JSON Schema utilities for tool input schemas."""

from typing import Any, Optional

from jsonschema import Draft7Validator


def validate_schema(data: Any, schema: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate data against a JSON Schema.

    Args:
        data: The data to validate
        schema: JSON Schema to validate against

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    if not schema:
        return True, []

    validator = Draft7Validator(schema)
    errors = list(validator.iter_errors(data))

    if not errors:
        return True, []

    error_messages = [
        f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
        for e in errors
    ]

    return False, error_messages


def normalize_input_schema(schema: Optional[dict[str, Any]]) -> dict[str, Any]:
    """
    Ensure a tool input schema has a usable object structure.

    Language-model clients expect at least an object type and a properties
    mapping, never nulls.

    Args:
        schema: Schema reported by a provider (may be None)

    Returns:
        A normalized copy of the schema
    """
    normalized: dict[str, Any] = dict(schema or {})

    if "type" not in normalized:
        normalized["type"] = "object"

    if normalized.get("properties") is None:
        normalized["properties"] = {}

    if "required" in normalized and normalized["required"] is None:
        normalized["required"] = []

    defs = normalized.get("$defs")
    if isinstance(defs, dict):
        normalized["$defs"] = {
            key: normalize_input_schema(value) if isinstance(value, dict) else value
            for key, value in defs.items()
        }

    return normalized


def coerce_integers(arguments: dict[str, Any], schema: dict[str, Any]) -> dict[str, Any]:
    """
    Convert whole-number floats to int where the schema expects an integer.

    JSON decoders on the caller side often produce 5.0 for 5.

    Args:
        arguments: Tool arguments
        schema: Object schema describing the arguments

    Returns:
        A copy of the arguments with coerced values
    """
    properties = schema.get("properties") or {}
    coerced = dict(arguments)

    for name, value in arguments.items():
        prop = properties.get(name)
        if not isinstance(prop, dict) or prop.get("type") != "integer":
            continue
        if isinstance(value, float) and value.is_integer():
            coerced[name] = int(value)

    return coerced


def resolve_ref(document: dict[str, Any], ref: str) -> Optional[dict[str, Any]]:
    """
    Resolve a local JSON pointer such as '#/components/schemas/User'.

    Returns:
        The referenced object, or None if the pointer is not local or broken
    """
    if not ref.startswith("#/"):
        return None

    current: Any = document
    for part in ref[2:].split("/"):
        part = part.replace("~1", "/").replace("~0", "~")
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]

    return current if isinstance(current, dict) else None


def inline_refs(document: dict[str, Any], node: Any, _expanding: frozenset = frozenset()) -> Any:
    """
    Replace local $ref pointers with copies of the referenced schemas.

    Tool schemas are handed to callers and validators on their own, without
    the document they came from, so every reference must be expanded. A
    reference back into a schema that is already being expanded becomes an
    open object schema; a broken reference is dropped.

    Args:
        document: The document the pointers refer into
        node: Schema (or any JSON value) to expand

    Returns:
        An expanded copy of the node
    """
    if isinstance(node, list):
        return [inline_refs(document, item, _expanding) for item in node]
    if not isinstance(node, dict):
        return node

    siblings = {
        key: inline_refs(document, value, _expanding)
        for key, value in node.items()
        if key != "$ref"
    }

    ref = node.get("$ref")
    if not isinstance(ref, str):
        return siblings
    if ref in _expanding:
        return {"type": "object", **siblings}

    target = resolve_ref(document, ref)
    if target is None:
        return siblings

    return {**inline_refs(document, target, _expanding | {ref}), **siblings}
