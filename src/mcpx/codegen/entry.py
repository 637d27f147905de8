"""
MCPX Entry Synthesis

Builds the top-level ``main`` of a generated unit: it imports the selected
wrappers, awaits the best-ranked tool with arguments read off the intent,
and returns the result. A caller-supplied snippet (``options.snippet`` or a
fenced block in the intent) runs after the call and may reshape ``result``.
"""

from __future__ import annotations

import re
import textwrap
from collections.abc import Sequence
from typing import Any

from mcpx.codegen.generator import WrapperGenerator, estimate_tokens
from mcpx.codegen.types import python_literal, snake_case, ts_literal, ts_property_key
from mcpx.core.models import GeneratedUnit, Language, ToolDescriptor

FENCE_RE = re.compile(r"```[A-Za-z0-9_+-]*\n(.*?)```", re.DOTALL)
PAIR_RE = re.compile(
    r"""(?<![\w.])([A-Za-z_][\w-]*)\s*[=:]\s*("(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*'|[^\s,;]+)"""
)
QUOTED_RE = re.compile(r""""((?:[^"\\]|\\.)*)"|'((?:[^'\\]|\\.)*)'""")
URL_RE = re.compile(r"\bhttps?://[^\s'\"<>]+", re.IGNORECASE)
EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
PATH_RE = re.compile(r"(?<![\w:/])(?:~|\.{1,2})?/[^\s'\"<>,;]*|\b[\w.-]+\.[A-Za-z0-9]{1,5}\b")
NUMBER_RE = re.compile(r"(?<![\w.])-?\d+(?:\.\d+)?(?![\w.])")

PATH_HINTS = ("path", "file", "dir", "folder", "filename")
URL_HINTS = ("url", "uri", "link", "href", "endpoint")
TEXT_HINTS = ("query", "q", "text", "prompt", "search", "message", "content", "term")


def split_snippet(intent: str) -> tuple[str, str | None]:
    """Separate a fenced code block from the prose of an intent."""
    match = FENCE_RE.search(intent)
    if not match:
        return intent, None
    prose = (intent[: match.start()] + intent[match.end():]).strip()
    return prose, match.group(1).rstrip("\n")


def _unquote(raw: str) -> str:
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in "\"'":
        return re.sub(r"\\(.)", r"\1", raw[1:-1])
    return raw


def _coerce(value: str, schema: dict[str, Any]) -> Any:
    stype = schema.get("type")
    if stype == "integer":
        try:
            return int(value)
        except ValueError:
            return value
    if stype == "number":
        try:
            return float(value) if "." in value else int(value)
        except ValueError:
            return value
    if stype == "boolean":
        if value.lower() in ("true", "yes", "1", "on"):
            return True
        if value.lower() in ("false", "no", "0", "off"):
            return False
    return value


def extract_arguments(intent: str, descriptor: ToolDescriptor) -> dict[str, Any]:
    """Read argument values for ``descriptor`` off the intent text.

    Explicit ``name=value`` pairs win; remaining parameters are filled by
    type and name hints (paths, URLs, e-mail addresses, numbers, enum
    words, quoted strings). Each piece of text is used at most once.
    """
    properties = descriptor.properties
    args: dict[str, Any] = {}
    consumed: list[tuple[int, int]] = []

    def free(span: tuple[int, int]) -> bool:
        return all(span[1] <= s or span[0] >= e for s, e in consumed)

    lowered_keys = {k.lower(): k for k in properties}
    for match in PAIR_RE.finditer(intent):
        key = lowered_keys.get(match.group(1).lower())
        if key is None or key in args:
            continue
        schema = properties[key] if isinstance(properties[key], dict) else {}
        args[key] = _coerce(_unquote(match.group(2)), schema)
        consumed.append(match.span())

    def take(pattern: re.Pattern[str], group: int = 0) -> str | None:
        for match in pattern.finditer(intent):
            if free(match.span()):
                consumed.append(match.span())
                value = match.group(group)
                if value is None:
                    value = next(g for g in match.groups() if g is not None)
                return value
        return None

    ordered = [k for k in sorted(properties) if k in descriptor.required]
    ordered += [k for k in sorted(properties) if k not in descriptor.required]
    for key in ordered:
        if key in args:
            continue
        schema = properties[key] if isinstance(properties[key], dict) else {}
        stype = schema.get("type")
        lname = key.lower()
        value: Any = None

        if isinstance(schema.get("enum"), list):
            for option in schema["enum"]:
                if isinstance(option, str) and re.search(
                    rf"(?<![\w]){re.escape(option)}(?![\w])", intent, re.IGNORECASE
                ):
                    value = option
                    break
        elif stype in ("number", "integer"):
            raw = take(NUMBER_RE)
            value = _coerce(raw, schema) if raw is not None else None
        elif stype == "string" or stype is None:
            if any(h in lname for h in URL_HINTS):
                value = take(URL_RE)
            elif "email" in lname or lname == "mail":
                value = take(EMAIL_RE)
            elif any(h in lname for h in PATH_HINTS):
                value = take(PATH_RE)
            if isinstance(value, str):
                value = value.rstrip(".,)") or None
            if value is None:
                quoted = take(QUOTED_RE, group=1)
                if quoted is not None:
                    value = re.sub(r"\\(.)", r"\1", quoted)
            if value is None and lname in TEXT_HINTS and key in descriptor.required:
                value = intent.strip()

        if value is not None:
            args[key] = value
    return args


class EntryBuilder:
    """Synthesizes the entry module and assembles the GeneratedUnit."""

    def __init__(self, generator: WrapperGenerator | None = None):
        self._generator = generator or WrapperGenerator()

    def build_unit(
        self,
        intent: str,
        tools: Sequence[ToolDescriptor],
        language: Language,
        snippet: str | None = None,
    ) -> GeneratedUnit:
        """Render stubs for ``tools`` and an entry calling ``tools[0]``."""
        language = Language.parse(language)
        prose, fenced = split_snippet(intent)
        snippet = snippet if snippet is not None else fenced

        stubs = self._generator.render(tools, language)
        plan = self._generator.plan(tools, language)

        primary = tools[0]
        args = extract_arguments(prose, primary)
        for key in primary.required:
            args.setdefault(key, None)

        if language is Language.PYTHON:
            entry = self._python_entry(plan, primary, args, snippet)
        else:
            entry = self._typescript_entry(plan, primary, args, snippet)

        source = "".join(s.content for s in stubs) + entry
        return GeneratedUnit(
            language=language,
            tool_stubs=stubs,
            entry=entry,
            tools=[d.fqn for d in tools],
            token_cost_estimate=estimate_tokens(source),
        )

    @staticmethod
    def _aliases(plan: dict[str, list[tuple[ToolDescriptor, str]]]) -> dict[str, str | None]:
        counts: dict[str, int] = {}
        for entries in plan.values():
            for _, func in entries:
                counts[func] = counts.get(func, 0) + 1
        aliases = {}
        for entries in plan.values():
            for descriptor, func in entries:
                aliases[descriptor.fqn] = func if counts[func] == 1 else None
        return aliases

    def _python_entry(self, plan, primary, args, snippet) -> str:
        aliases = self._aliases(plan)
        lines = ["# Generated by mcpx; do not edit.\n"]
        for server, entries in plan.items():
            imported = []
            for descriptor, func in entries:
                alias = aliases[descriptor.fqn] or f"{snake_case(server)}_{func}"
                aliases[descriptor.fqn] = alias
                imported.append(func if alias == func else f"{func} as {alias}")
            lines.append(f"from servers.{snake_case(server)} import {', '.join(imported)}\n")

        call_args = ", ".join(f"{self._py_kwarg(primary, k)}={python_literal(v)}" for k, v in sorted(args.items()))
        body = [f"result = await {aliases[primary.fqn]}({call_args})"]
        if snippet:
            body.extend(textwrap.dedent(snippet).splitlines())
        body.append("return result")

        lines.append("\n\nasync def main():\n")
        lines.extend(f"    {line}\n" if line.strip() else "\n" for line in body)
        return "".join(lines)

    @staticmethod
    def _py_kwarg(descriptor: ToolDescriptor, key: str) -> str:
        required = set(descriptor.required)
        ordered = [k for k in sorted(descriptor.properties) if k in required]
        ordered += [k for k in sorted(descriptor.properties) if k not in required]
        taken: set[str] = set()
        for candidate in ordered:
            pname = snake_case(candidate)
            while pname in taken or pname in ("args", "TOOL"):
                pname = f"{pname}_"
            taken.add(pname)
            if candidate == key:
                return pname
        return snake_case(key)

    def _typescript_entry(self, plan, primary, args, snippet) -> str:
        aliases = self._aliases(plan)
        lines = ["// Generated by mcpx; do not edit.\n"]
        for server, entries in plan.items():
            imported = []
            for descriptor, func in entries:
                alias = aliases[descriptor.fqn] or f"{snake_case(server)}_{func}"
                aliases[descriptor.fqn] = alias
                imported.append(func if alias == func else f"{func} as {alias}")
            lines.append(f'import {{ {", ".join(imported)} }} from "./servers/{snake_case(server)}";\n')

        fields = ", ".join(f"{ts_property_key(k)}: {ts_literal(v)}" for k, v in sorted(args.items()))
        call_arg = f"{{ {fields} }}" if fields else "{}"
        body = [f"let result: any = await {aliases[primary.fqn]}({call_arg} as any);"]
        if snippet:
            body.extend(textwrap.dedent(snippet).splitlines())
        body.append("return result;")

        lines.append("\nexport async function main(): Promise<unknown> {\n")
        lines.extend(f"  {line}\n" if line.strip() else "\n" for line in body)
        lines.append("}\n")
        return "".join(lines)
