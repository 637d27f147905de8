"""
MCPX Tool Metadata Parser

Reads tool metadata documents into ToolDescriptors. Three shapes are
accepted, either as a single object or an array:

- parameter-list descriptors (``name``/``description``/``parameters``/``returns``)
- MCP protocol descriptors (``inputSchema``/``outputSchema`` JSON Schema)
- schema bundles written by ``mcp-add``: ``{"version", "mcp", "tools": [...]}``

Parameter lists are normalized into a JSON Schema object shape so that the
rest of the engine works from a single representation.
"""

from __future__ import annotations

import json
from typing import Any

from mcpx.core.models import ToolDescriptor
from mcpx.exceptions import ConfigError
from mcpx.logging import get_logger

logger = get_logger("mcpx.discovery.schema")

PRIMITIVE_TYPES = ("string", "number", "integer", "boolean", "array", "object", "null")
COMPOSITE_KEYS = ("anyOf", "oneOf", "allOf", "$ref")


def parse_document(
    text: str,
    source_uri: str = "",
    default_server: str = "default",
) -> tuple[list[ToolDescriptor], list[str]]:
    """Parse one metadata file.

    Returns the descriptors plus a list of semantic warnings. Raises
    ConfigError when the document is syntactically invalid.
    """
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(
            f"invalid JSON ({exc.msg} at line {exc.lineno})", path=source_uri or None
        ) from exc

    server = default_server
    if isinstance(raw, dict) and isinstance(raw.get("tools"), list):
        server = str(raw.get("mcp") or raw.get("server") or default_server)
        entries = raw["tools"]
    elif isinstance(raw, list):
        entries = raw
    elif isinstance(raw, dict):
        entries = [raw]
    else:
        raise ConfigError("metadata must be an object or an array", path=source_uri or None)

    warnings: list[str] = []
    descriptors = [
        parse_descriptor(entry, server, source_uri, warnings, position=i)
        for i, entry in enumerate(entries)
    ]
    for message in warnings:
        logger.warning(message, extra={"phase": "discovery"})
    return descriptors, warnings


def parse_descriptor(
    entry: Any,
    default_server: str,
    source_uri: str,
    warnings: list[str],
    position: int = 0,
) -> ToolDescriptor:
    """Normalize one descriptor entry."""
    where = f"{source_uri or '<memory>'}[{position}]"
    if not isinstance(entry, dict):
        raise ConfigError(f"entry {position} is not an object", path=source_uri or None)
    name = entry.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"entry {position} has no 'name'", path=source_uri or None)

    description = entry.get("description") or ""
    if not isinstance(description, str):
        raise ConfigError(f"'{name}': description must be a string", path=source_uri or None)
    if not description.strip():
        warnings.append(f"{where}: tool '{name}' has an empty description")

    if "inputSchema" in entry:
        input_schema = _normalize_input_schema(entry["inputSchema"], name, source_uri)
    else:
        input_schema = _parameters_to_schema(entry.get("parameters"), name, where, warnings)
        if isinstance(entry.get("definitions"), dict):
            input_schema["definitions"] = entry["definitions"]

    if "outputSchema" in entry:
        output_schema = entry["outputSchema"] if isinstance(entry["outputSchema"], dict) else None
    else:
        output_schema = _returns_to_schema(entry.get("returns"))

    keywords = entry.get("keywords") or []
    if not isinstance(keywords, list):
        warnings.append(f"{where}: keywords of '{name}' ignored (not a list)")
        keywords = []

    examples = entry.get("examples") or []
    if not isinstance(examples, list):
        examples = []

    return ToolDescriptor(
        name=name.strip(),
        server=str(entry.get("server") or default_server),
        description=description.strip(),
        category=str(entry.get("category") or ""),
        keywords=[str(k) for k in keywords],
        input_schema=input_schema,
        output_schema=output_schema,
        examples=[e for e in examples if isinstance(e, dict)],
        source_uri=source_uri,
    )


def _normalize_input_schema(schema: Any, name: str, source_uri: str) -> dict[str, Any]:
    if not isinstance(schema, dict):
        raise ConfigError(f"'{name}': inputSchema must be an object", path=source_uri or None)
    normalized = dict(schema)
    normalized.setdefault("type", "object")
    normalized.setdefault("properties", {})
    normalized["required"] = sorted(normalized.get("required") or [])
    if "$defs" in normalized and "definitions" not in normalized:
        normalized["definitions"] = normalized.pop("$defs")
    return normalized


def _parameters_to_schema(
    parameters: Any, tool_name: str, where: str, warnings: list[str]
) -> dict[str, Any]:
    properties: dict[str, Any] = {}
    required: list[str] = []

    if parameters is None:
        warnings.append(f"{where}: tool '{tool_name}' declares no parameters")
        parameters = []
    if isinstance(parameters, dict):
        parameters = [{"name": key, **(value if isinstance(value, dict) else {})}
                      for key, value in parameters.items()]
    if not isinstance(parameters, list):
        warnings.append(f"{where}: parameters of '{tool_name}' ignored (not a list)")
        parameters = []

    for param in parameters:
        if not isinstance(param, dict) or not isinstance(param.get("name"), str):
            warnings.append(f"{where}: parameter without a name in '{tool_name}' skipped")
            continue
        pname = param["name"]
        if pname in properties:
            warnings.append(f"{where}: duplicate parameter '{pname}' in '{tool_name}'")
        properties[pname] = _parameter_to_property(param, tool_name, where, warnings)
        if param.get("required", True):
            if pname not in required:
                required.append(pname)

    return {"type": "object", "properties": properties, "required": sorted(required)}


def _parameter_to_property(
    param: dict[str, Any], tool_name: str, where: str, warnings: list[str]
) -> dict[str, Any]:
    prop: dict[str, Any] = {}
    ptype = param.get("type")
    if ptype is not None:
        if ptype not in PRIMITIVE_TYPES:
            warnings.append(
                f"{where}: parameter '{param.get('name', '?')}' of '{tool_name}' "
                f"has unknown type '{ptype}'"
            )
        prop["type"] = ptype
    if param.get("description"):
        prop["description"] = str(param["description"])
    if isinstance(param.get("enum"), list):
        prop["enum"] = param["enum"]
    if isinstance(param.get("items"), dict):
        prop["items"] = _parameter_to_property(param["items"], tool_name, where, warnings)
    if isinstance(param.get("properties"), dict):
        prop["properties"] = param["properties"]
        if isinstance(param.get("required"), list):
            prop["required"] = param["required"]
    if "default" in param:
        prop["default"] = param["default"]
    for key in COMPOSITE_KEYS:
        if key in param:
            prop[key] = param[key]
    return prop


def _returns_to_schema(returns: Any) -> dict[str, Any] | None:
    if returns is None:
        return None
    if isinstance(returns, str):
        return {"type": returns}
    if isinstance(returns, dict):
        return dict(returns)
    return None


def descriptor_to_bundle_entry(descriptor: ToolDescriptor) -> dict[str, Any]:
    """Render a descriptor the way schema bundles store it."""
    entry: dict[str, Any] = {
        "name": descriptor.name,
        "description": descriptor.description,
        "inputSchema": descriptor.input_schema,
    }
    if descriptor.output_schema is not None:
        entry["outputSchema"] = descriptor.output_schema
    if descriptor.category:
        entry["category"] = descriptor.category
    if descriptor.keywords:
        entry["keywords"] = descriptor.keywords
    return entry
