"""
Normalization of remote tool input schemas for the completion service.

Completion APIs only accept property names made of ``[A-Za-z0-9_-]``.
Remote servers are free to use anything, so every ``properties`` map is
rewritten before tools are declared, and arguments coming back from the
completion service are mapped to the server's own names again with
:func:`restore_argument_keys`.
"""

import copy
import re
from typing import Any, Dict, Iterable, List, Optional

from mcp.types import Tool

_INVALID_KEY_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize_key(key: str) -> str:
    return _INVALID_KEY_CHARS.sub("_", key)


def sanitize_schema(schema: Any) -> Any:
    """
    Return a copy of ``schema`` whose property names are safe to declare.

    The top level gets ``type: object`` when it has no type, and an empty
    ``properties`` map when it is an object without one. Values that are not
    mappings are returned unchanged.
    """
    if not isinstance(schema, dict):
        return schema

    schema = copy.deepcopy(schema)
    if "type" not in schema:
        schema["type"] = "object"
    if schema["type"] == "object" and not isinstance(schema.get("properties"), dict):
        schema["properties"] = {}

    return _sanitize_node(schema)


def _sanitize_node(node: Any) -> Any:
    if isinstance(node, list):
        return [_sanitize_node(item) for item in node]
    if not isinstance(node, dict):
        return node

    sanitized: Dict[str, Any] = {}
    key_mapping: Optional[Dict[str, str]] = None

    for key, value in node.items():
        if key == "properties" and isinstance(value, dict):
            key_mapping = {}
            properties: Dict[str, Any] = {}
            for prop_key, prop_schema in value.items():
                new_key = sanitize_key(prop_key)
                key_mapping[prop_key] = new_key
                properties[new_key] = _sanitize_node(prop_schema)
            sanitized[key] = properties
        elif key == "required":
            # Rewritten below, once the mapping for this schema is known
            sanitized[key] = value
        else:
            sanitized[key] = _sanitize_node(value)

    required = sanitized.get("required")
    if key_mapping is not None and isinstance(required, list):
        sanitized["required"] = _dedupe(
            key_mapping.get(name, sanitize_key(name)) if isinstance(name, str) else name
            for name in required
        )

    return sanitized


def _dedupe(names: Iterable[Any]) -> List[Any]:
    seen = []
    for name in names:
        if name not in seen:
            seen.append(name)
    return seen


def restore_argument_keys(arguments: Any, schema: Any) -> Any:
    """
    Map argument names produced against a sanitized schema back to the
    names used by the original ``schema``.

    Walks nested object properties and array ``items``. Keys that do not
    correspond to any declared property are left as they are.
    """
    if not isinstance(schema, dict):
        return arguments

    if isinstance(arguments, list):
        items = schema.get("items")
        return [restore_argument_keys(item, items) for item in arguments]

    if not isinstance(arguments, dict):
        return arguments

    properties = schema.get("properties")
    if not isinstance(properties, dict):
        return dict(arguments)

    # Same iteration order as _sanitize_node, so collisions resolve the same way
    reverse: Dict[str, str] = {}
    for original in properties:
        reverse[sanitize_key(original)] = original

    restored: Dict[str, Any] = {}
    for key, value in arguments.items():
        original = reverse.get(key, key)
        restored[original] = restore_argument_keys(value, properties.get(original))
    return restored


def tool_declarations(tools: Iterable[Tool]) -> List[Dict[str, Any]]:
    """
    Build completion-service tool declarations from MCP tool descriptors.
    """
    declarations = []
    for tool in tools:
        input_schema = tool.inputSchema or {"type": "object", "properties": {}, "required": []}
        declarations.append(
            {
                "name": tool.name,
                "description": tool.description or "",
                "input_schema": sanitize_schema(input_schema),
            }
        )
    return declarations
