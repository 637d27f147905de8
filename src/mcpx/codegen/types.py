"""
MCPX Type Projection

Projects the recognized JSON Schema subset onto TypeScript and Python type
expressions. Composite constructs (``anyOf``/``oneOf``/``allOf``/``$ref``)
are only accepted when the descriptor declares a top-level ``definitions``
section; ``$ref`` targets are inlined from it.

Object shapes with declared properties become inline object types in
TypeScript and named ``TypedDict`` declarations in Python. The Python
declarations are collected on ``TypeProjector.shapes`` in dependency order.
"""

from __future__ import annotations

import json
import keyword
import re
from typing import Any

from mcpx.core.models import Language, ToolDescriptor
from mcpx.exceptions import SchemaRefUnresolved, SchemaUnsupported

SUPPORTED_TYPES = ("string", "number", "integer", "boolean", "array", "object", "null")
COMPOSITES = ("anyOf", "oneOf", "allOf", "$ref")
UNSUPPORTED_KEYWORDS = ("not", "if", "then", "else", "patternProperties", "dependentSchemas")

_IDENT_RE = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*$")
_SPLIT_RE = re.compile(r"[^A-Za-z0-9]+|(?<=[a-z0-9])(?=[A-Z])")

TS_RESERVED = frozenset({
    "break", "case", "catch", "class", "const", "continue", "debugger", "default",
    "delete", "do", "else", "enum", "export", "extends", "false", "finally", "for",
    "function", "if", "import", "in", "instanceof", "new", "null", "return", "super",
    "switch", "this", "throw", "true", "try", "typeof", "var", "void", "while", "with",
    "let", "static", "yield", "await",
})

PY_RESERVED = frozenset({
    "Any", "Dict", "List", "Literal", "NotRequired", "Optional", "TypedDict", "Union", "TOOL",
})


def _words(name: str) -> list[str]:
    return [w for w in _SPLIT_RE.split(name) if w]


def snake_case(name: str) -> str:
    words = [w.lower() for w in _words(name)] or ["tool"]
    ident = "_".join(words)
    if ident[0].isdigit():
        ident = f"_{ident}"
    if keyword.iskeyword(ident) or ident in ("call", "dispatcher"):
        ident = f"{ident}_"
    return ident


def camel_case(name: str) -> str:
    words = _words(name) or ["tool"]
    ident = words[0][0].lower() + words[0][1:] + "".join(w[0].upper() + w[1:] for w in words[1:])
    if ident[0].isdigit():
        ident = f"_{ident}"
    if ident in TS_RESERVED or ident == "call":
        ident = f"{ident}_"
    return ident


def pascal_case(name: str) -> str:
    ident = camel_case(name).rstrip("_")
    return ident[0].upper() + ident[1:]


def ts_property_key(key: str) -> str:
    return key if _IDENT_RE.match(key) else json.dumps(key)


class TypeProjector:
    """Projects one descriptor's schemas onto a target language."""

    def __init__(self, descriptor: ToolDescriptor, language: Language):
        self._descriptor = descriptor
        self._language = language
        self._definitions: dict[str, Any] | None = descriptor.input_schema.get("definitions")
        self.uses: set[str] = set()
        self.shapes: dict[str, str] = {}

    def project(self, schema: Any, _seen: tuple[str, ...] = (), name: str | None = None) -> str:
        """Return the type expression for ``schema``.

        ``name`` is the preferred Python name for an object shape found at
        this position; nested shapes derive their names from it.
        """
        if schema is None or schema is True or schema == {}:
            return self._any()
        if not isinstance(schema, dict):
            raise SchemaUnsupported(self._descriptor.fqn, repr(schema)[:40])

        for key in UNSUPPORTED_KEYWORDS:
            if key in schema:
                raise SchemaUnsupported(self._descriptor.fqn, key)

        present = [key for key in COMPOSITES if key in schema]
        if present and self._definitions is None:
            raise SchemaUnsupported(self._descriptor.fqn, present[0])

        if "$ref" in schema:
            return self._project_ref(schema["$ref"], _seen)
        if "anyOf" in schema or "oneOf" in schema:
            options = schema.get("anyOf") or schema.get("oneOf") or []
            return self._union([
                self.project(s, _seen, f"{name}Option{i}" if name else None)
                for i, s in enumerate(options, 1)
            ])
        if "allOf" in schema:
            return self._intersection(schema["allOf"], _seen, name)

        if "enum" in schema:
            return self._enum(schema["enum"])

        stype = schema.get("type")
        if stype is None:
            stype = "object" if "properties" in schema else None
        if isinstance(stype, list):
            return self._union([self.project({**schema, "type": t}, _seen, name) for t in stype])
        if stype is None:
            return self._any()
        if stype not in SUPPORTED_TYPES:
            raise SchemaUnsupported(self._descriptor.fqn, f"type:{stype}")

        if stype == "array":
            return self._array(self.project(schema.get("items"), _seen, f"{name}Item" if name else None))
        if stype == "object":
            return self._object(schema, _seen, name)
        return self._primitive(stype)

    # ─── references ─────────────────────────────────────────

    def _ref_name(self, ref: str, seen: tuple[str, ...]) -> str:
        name = None
        for prefix in ("#/definitions/", "#/$defs/"):
            if isinstance(ref, str) and ref.startswith(prefix):
                name = ref[len(prefix):]
        if name is None or name not in (self._definitions or {}):
            raise SchemaRefUnresolved(self._descriptor.fqn, str(ref))
        if name in seen:
            raise SchemaUnsupported(self._descriptor.fqn, f"recursive $ref {ref}")
        return name

    def _project_ref(self, ref: str, seen: tuple[str, ...]) -> str:
        name = self._ref_name(ref, seen)
        return self.project(self._definitions[name], seen + (name,), pascal_case(name))

    # ─── language specifics ─────────────────────────────────

    @property
    def _ts(self) -> bool:
        return self._language is Language.TYPESCRIPT

    def _any(self) -> str:
        if self._ts:
            return "unknown"
        self.uses.add("Any")
        return "Any"

    def _primitive(self, stype: str) -> str:
        if self._ts:
            return {"string": "string", "number": "number", "integer": "number",
                    "boolean": "boolean", "null": "null"}[stype]
        return {"string": "str", "number": "float", "integer": "int",
                "boolean": "bool", "null": "None"}[stype]

    def _enum(self, values: list[Any]) -> str:
        if not isinstance(values, list) or not values:
            raise SchemaUnsupported(self._descriptor.fqn, "empty enum")
        literals = [json.dumps(v) if self._ts else python_literal(v) for v in values]
        if self._ts:
            return " | ".join(literals)
        self.uses.add("Literal")
        return f"Literal[{', '.join(literals)}]"

    def _array(self, item: str) -> str:
        if self._ts:
            return f"Array<{item}>"
        self.uses.add("List")
        return f"List[{item}]"

    def _union(self, members: list[str]) -> str:
        unique = list(dict.fromkeys(members))
        if len(unique) == 1:
            return unique[0]
        if self._ts:
            return "(" + " | ".join(unique) + ")"
        self.uses.add("Union")
        return f"Union[{', '.join(unique)}]"

    def _intersection(self, parts: list[Any], seen: tuple[str, ...], name: str | None) -> str:
        if self._ts:
            members = list(dict.fromkeys(self.project(p, seen) for p in parts))
            return members[0] if len(members) == 1 else "(" + " & ".join(members) + ")"
        properties: dict[str, Any] = {}
        required: set[str] = set()
        for part in parts:
            resolved = self._resolve(part, seen)
            if resolved.get("type", "object" if "properties" in resolved else None) != "object":
                raise SchemaUnsupported(self._descriptor.fqn, "allOf over non-object members")
            properties.update(resolved.get("properties") or {})
            required.update(resolved.get("required") or [])
        if not properties:
            return self._dict(self._any())
        return self._typed_dict(properties, required, seen, name)

    def _resolve(self, schema: Any, seen: tuple[str, ...]) -> dict[str, Any]:
        if isinstance(schema, dict) and "$ref" in schema:
            return self._definitions[self._ref_name(schema["$ref"], seen)]
        return schema if isinstance(schema, dict) else {}

    def _dict(self, value: str) -> str:
        if self._ts:
            return f"Record<string, {value}>"
        self.uses.add("Dict")
        return f"Dict[str, {value}]"

    def _object(self, schema: dict[str, Any], seen: tuple[str, ...], name: str | None = None) -> str:
        properties = schema.get("properties") or {}
        additional = schema.get("additionalProperties")
        if not properties:
            value = self.project(additional, seen) if isinstance(additional, dict) else self._any()
            return self._dict(value)
        required = set(schema.get("required") or [])
        if not self._ts:
            return self._typed_dict(properties, required, seen, name)
        fields = [
            f"{ts_property_key(key)}{'' if key in required else '?'}: {self.project(properties[key], seen)}"
            for key in sorted(properties)
        ]
        return "{ " + "; ".join(fields) + " }"

    def _typed_dict(
        self,
        properties: dict[str, Any],
        required: set[str],
        seen: tuple[str, ...],
        name: str | None,
    ) -> str:
        base = name or f"{pascal_case(self._descriptor.name)}Shape"
        fields = []
        for key in sorted(properties):
            ptype = self.project(properties[key], seen, f"{base}{pascal_case(key)}")
            if key not in required:
                self.uses.add("NotRequired")
                ptype = f"NotRequired[{ptype}]"
            fields.append(f"{json.dumps(key)}: {ptype}")
        self.uses.add("TypedDict")

        # Same name and same fields means the same shape (a reused $ref).
        candidate, suffix = base, 2
        while True:
            declaration = f'{candidate} = TypedDict("{candidate}", {{{", ".join(fields)}}})'
            if candidate not in PY_RESERVED and self.shapes.get(candidate, declaration) == declaration:
                break
            candidate, suffix = f"{base}{suffix}", suffix + 1
        self.shapes[candidate] = declaration
        return candidate


def python_literal(value: Any) -> str:
    """Render a JSON value as Python source."""
    if value is None:
        return "None"
    if value is True:
        return "True"
    if value is False:
        return "False"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return json.dumps(value)
    if isinstance(value, list):
        return "[" + ", ".join(python_literal(v) for v in value) + "]"
    if isinstance(value, dict):
        items = ", ".join(f"{json.dumps(str(k))}: {python_literal(v)}" for k, v in value.items())
        return "{" + items + "}"
    return json.dumps(str(value))


def ts_literal(value: Any) -> str:
    return json.dumps(value)
