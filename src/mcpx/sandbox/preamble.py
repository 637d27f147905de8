"""
MCPX Sandbox Preamble

Support files written next to a generated unit inside the sandbox workdir:
the dispatcher (``call`` / ``fetch_url``), a launcher that runs ``main`` and
reports its result, and for the ``vm`` level a restricted-builtins runner.

The sandbox talks to the host over its own stdio, one JSON object per line.
Sandbox -> host (stdout)::

    {"type": "rpc_request", "id": n, "payload": {"method": "call", "tool": fqn, "args": {...}}}
    {"type": "rpc_request", "id": n, "payload": {"method": "fetch", "url": "..."}}
    {"type": "stdout" | "stderr", "data": "..."}
    {"type": "result", "value": <json>}
    {"type": "error", "kind": "...", "message": "...", "code": n | null}

Host -> sandbox (stdin)::

    {"type": "rpc_response", "id": n, "success": true, "payload": <json>}
    {"type": "rpc_response", "id": n, "success": false, "error": "...", "kind": "...", "code": n}
"""

from __future__ import annotations

import textwrap
from pathlib import Path

from mcpx.core.models import GeneratedUnit, IsolationLevel, Language
from mcpx.exceptions import McpxIOError

PY_DISPATCHER = textwrap.dedent(
    '''
    # Generated by mcpx; do not edit.
    import asyncio
    import json
    import sys

    _PROTOCOL = sys.__stdout__
    _PENDING = {}
    _STATE = {"next_id": 0, "reader": None}


    class ToolCallError(RuntimeError):
        """A dispatcher call rejected by the host."""

        def __init__(self, message, kind="ToolError", code=None, data=None):
            super().__init__(message)
            self.kind = kind
            self.code = code
            self.data = data


    def _send(message):
        _PROTOCOL.write(json.dumps(message, separators=(",", ":"), default=str) + "\\n")
        _PROTOCOL.flush()


    class _StreamProxy:
        def __init__(self, kind):
            self._kind = kind

        def write(self, data):
            if data:
                _send({"type": self._kind, "data": data})
            return len(data)

        def flush(self):
            pass

        def isatty(self):
            return False


    async def _reader():
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=16 * 1024 * 1024)
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                try:
                    message = json.loads(line)
                except ValueError:
                    continue
                if not isinstance(message, dict) or message.get("type") != "rpc_response":
                    continue
                future = _PENDING.pop(message.get("id"), None)
                if future is None or future.done():
                    continue
                if message.get("success"):
                    future.set_result(message.get("payload"))
                else:
                    future.set_exception(ToolCallError(
                        message.get("error") or "RPC error",
                        message.get("kind") or "ToolError",
                        message.get("code"),
                        message.get("data"),
                    ))
        finally:
            for future in list(_PENDING.values()):
                if not future.done():
                    future.set_exception(ToolCallError("RPC channel closed", "Cancelled"))
            _PENDING.clear()


    async def _rpc(payload):
        reader = _STATE["reader"]
        if reader is None or reader.done():
            _STATE["reader"] = asyncio.ensure_future(_reader())
        _STATE["next_id"] += 1
        request_id = _STATE["next_id"]
        future = asyncio.get_running_loop().create_future()
        _PENDING[request_id] = future
        _send({"type": "rpc_request", "id": request_id, "payload": payload})
        return await future


    async def call(tool, args=None):
        """Invoke ``tool`` (``server.name``) through the host."""
        return await _rpc({"method": "call", "tool": tool, "args": args or {}})


    async def fetch_url(url):
        """GET ``url`` through the host; only allowlisted hosts are served."""
        return await _rpc({"method": "fetch", "url": url})


    def run(main):
        sys.stdout = _StreamProxy("stdout")
        sys.stderr = _StreamProxy("stderr")
        try:
            value = asyncio.run(main())
        except ToolCallError as exc:
            _send({"type": "error", "kind": exc.kind, "message": str(exc), "code": exc.code})
            return 1
        except Exception as exc:
            _send({"type": "error", "kind": "Internal", "message": f"{type(exc).__name__}: {exc}"})
            return 1
        _send({"type": "result", "value": value})
        return 0
    '''
).lstrip()

PY_LAUNCHER = textwrap.dedent(
    """
    # Generated by mcpx; do not edit.
    import sys

    import dispatcher
    from main import main

    sys.exit(dispatcher.run(main))
    """
).lstrip()

VM_RUNNER = textwrap.dedent(
    '''
    # Generated by mcpx; do not edit.
    import ast
    import asyncio
    import builtins
    import os
    import sys
    import types

    import dispatcher

    ROOT = os.path.dirname(os.path.abspath(__file__))

    # Importable standard modules and the members each one exposes. "*" exposes
    # every public non-module member; only C-level modules get it.
    SAFE_MODULE_MEMBERS = {
        "__future__": ("annotations",),
        "collections": ("ChainMap", "Counter", "OrderedDict", "defaultdict", "deque", "namedtuple"),
        "collections.abc": ("Iterable", "Iterator", "Mapping", "MutableMapping", "Sequence", "Set"),
        "dataclasses": ("asdict", "astuple", "dataclass", "field", "fields", "is_dataclass", "replace"),
        "datetime": ("MAXYEAR", "MINYEAR", "UTC", "date", "datetime", "time", "timedelta", "timezone"),
        "decimal": (
            "Decimal", "InvalidOperation", "ROUND_CEILING", "ROUND_DOWN", "ROUND_FLOOR",
            "ROUND_HALF_EVEN", "ROUND_HALF_UP", "ROUND_UP", "localcontext",
        ),
        "enum": ("Enum", "Flag", "IntEnum", "IntFlag", "StrEnum", "auto", "unique"),
        "fractions": ("Fraction",),
        "functools": ("cache", "cached_property", "cmp_to_key", "lru_cache", "partial", "reduce", "total_ordering", "wraps"),
        "itertools": "*",
        "json": ("JSONDecodeError", "dumps", "loads"),
        "math": "*",
        "re": (
            "A", "ASCII", "DOTALL", "I", "IGNORECASE", "M", "MULTILINE", "S", "VERBOSE", "X",
            "compile", "error", "escape", "findall", "finditer", "fullmatch", "match", "search",
            "split", "sub", "subn",
        ),
        "statistics": (
            "StatisticsError", "fmean", "mean", "median", "median_high", "median_low", "mode",
            "multimode", "pstdev", "pvariance", "quantiles", "stdev", "variance",
        ),
        "string": (
            "ascii_letters", "ascii_lowercase", "ascii_uppercase", "capwords", "digits",
            "hexdigits", "octdigits", "printable", "punctuation", "whitespace",
        ),
        "textwrap": ("dedent", "fill", "indent", "shorten", "wrap"),
        "typing": (
            "Any", "Callable", "Dict", "FrozenSet", "Iterable", "Iterator", "List", "Literal",
            "Mapping", "NamedTuple", "NotRequired", "Optional", "Required", "Sequence", "Set",
            "Tuple", "TypedDict", "Union", "cast",
        ),
    }

    SAFE_BUILTINS = (
        "abs", "all", "any", "ascii", "bin", "bool", "bytes", "callable", "chr",
        "dict", "divmod", "enumerate", "filter", "float", "format", "frozenset",
        "hash", "hex", "int", "isinstance", "issubclass", "iter", "len", "list",
        "map", "max", "min", "next", "object", "oct", "ord", "pow", "print",
        "property", "range", "repr", "reversed", "round", "set", "slice", "sorted",
        "staticmethod", "classmethod", "str", "sum", "super", "tuple", "zip",
        "ArithmeticError", "AssertionError", "AttributeError", "Exception",
        "IndexError", "KeyError", "LookupError", "NotImplementedError",
        "RuntimeError", "StopAsyncIteration", "StopIteration", "TypeError",
        "ValueError", "ZeroDivisionError", "None", "True", "False",
        "NotImplemented", "__build_class__",
    )

    FORBIDDEN_NAMES = frozenset({"__builtins__", "__loader__", "__spec__", "__import__", "__file__"})

    # Frame, code and event-loop handles reachable from coroutines, futures
    # and tracebacks without a leading underscore.
    FORBIDDEN_ATTRIBUTES = frozenset({
        "ag_await", "ag_code", "ag_frame", "cr_await", "cr_code", "cr_frame",
        "f_back", "f_builtins", "f_code", "f_globals", "f_locals",
        "gi_code", "gi_frame", "gi_yieldfrom", "tb_frame", "tb_next",
        "get_coro", "get_loop",
    })

    _MODULES = {}
    _NAMESPACES = {}


    class SandboxViolation(Exception):
        pass


    def _expose(name):
        if name not in _NAMESPACES:
            real = builtins.__import__(name, fromlist=("_",))
            members = SAFE_MODULE_MEMBERS[name]
            if members == "*":
                members = [
                    key for key, value in vars(real).items()
                    if not key.startswith("_") and not isinstance(value, types.ModuleType)
                ]
            _NAMESPACES[name] = types.SimpleNamespace(**{
                key: getattr(real, key) for key in members if hasattr(real, key)
            })
        return _NAMESPACES[name]


    _ASYNCIO = types.SimpleNamespace(
        gather=asyncio.gather,
        sleep=asyncio.sleep,
        wait_for=asyncio.wait_for,
        TimeoutError=asyncio.TimeoutError,
        CancelledError=asyncio.CancelledError,
    )
    _DISPATCHER = types.SimpleNamespace(
        call=dispatcher.call,
        fetch_url=dispatcher.fetch_url,
        ToolCallError=dispatcher.ToolCallError,
    )


    def _guard(tree, filename):
        for node in ast.walk(tree):
            if isinstance(node, ast.Attribute) and (node.attr.startswith("_") or node.attr in FORBIDDEN_ATTRIBUTES):
                raise SandboxViolation(f"{filename}:{node.lineno}: access to '{node.attr}' is not allowed")
            if isinstance(node, ast.Name) and node.id in FORBIDDEN_NAMES:
                raise SandboxViolation(f"{filename}:{node.lineno}: name '{node.id}' is not allowed")


    def _source_path(name):
        base = os.path.join(ROOT, *name.split("."))
        if os.path.isdir(base) and os.path.isfile(os.path.join(base, "__init__.py")):
            return os.path.join(base, "__init__.py"), True
        if os.path.isfile(base + ".py"):
            return base + ".py", False
        return None, False


    def _load(name):
        if name in _MODULES:
            return _MODULES[name]
        path, is_package = _source_path(name)
        if path is None:
            raise ImportError(f"No module named '{name}'")
        with open(path, encoding="utf-8") as fh:
            source = fh.read()
        relative = os.path.relpath(path, ROOT)
        tree = ast.parse(source, relative)
        _guard(tree, relative)
        module = types.ModuleType(name)
        module.__dict__.update({
            "__builtins__": _BUILTINS,
            "__name__": name,
            "__package__": name if is_package else name.rpartition(".")[0],
        })
        _MODULES[name] = module
        parent, _, child = name.rpartition(".")
        if parent:
            setattr(_load(parent), child, module)
        exec(compile(tree, relative, "exec"), module.__dict__)
        return module


    def _restricted_import(name, globals=None, locals=None, fromlist=(), level=0):
        if level:
            package = (globals or {}).get("__package__") or ""
            parts = package.split(".")
            if level > 1:
                parts = parts[: -(level - 1)]
            base = ".".join(p for p in parts if p)
            name = f"{base}.{name}" if name else base
        if name == "dispatcher":
            return _DISPATCHER
        if name == "asyncio":
            return _ASYNCIO
        root = name.split(".")[0]
        if root in ("servers", "main"):
            module = _load(name)
            if fromlist:
                for item in fromlist:
                    if not hasattr(module, item) and _source_path(f"{name}.{item}")[0]:
                        _load(f"{name}.{item}")
                return module
            return _load(root)
        if name in SAFE_MODULE_MEMBERS:
            return _expose(name if fromlist else root)
        raise ImportError(f"import of '{name}' is not allowed at the vm isolation level")


    _BUILTINS = {key: getattr(builtins, key) for key in SAFE_BUILTINS if hasattr(builtins, key)}
    _BUILTINS["__import__"] = _restricted_import


    def main():
        try:
            entry = _load("main")
        except (SandboxViolation, ImportError, SyntaxError) as exc:
            dispatcher._send({"type": "error", "kind": "PolicyDenied", "message": str(exc)})
            return 1
        return dispatcher.run(entry.main)


    sys.exit(main())
    '''
).lstrip()

TS_DISPATCHER = textwrap.dedent(
    """
    // Generated by mcpx; do not edit.
    import * as readline from "node:readline";

    type Waiter = { resolve: (value: any) => void; reject: (error: Error) => void };

    const pending = new Map<number, Waiter>();
    const protocolWrite = process.stdout.write.bind(process.stdout);
    let nextId = 0;
    let reader: readline.Interface | null = null;

    export class ToolCallError extends Error {
      kind: string;
      code?: number;

      constructor(message: string, kind: string = "ToolError", code?: number) {
        super(message);
        this.name = "ToolCallError";
        this.kind = kind;
        this.code = code;
      }
    }

    function send(message: unknown): void {
      protocolWrite(JSON.stringify(message) + "\\n");
    }

    function ensureReader(): void {
      if (reader) return;
      reader = readline.createInterface({ input: process.stdin });
      reader.on("line", (line: string) => {
        let message: any;
        try {
          message = JSON.parse(line);
        } catch {
          return;
        }
        if (!message || message.type !== "rpc_response") return;
        const waiter = pending.get(message.id);
        if (!waiter) return;
        pending.delete(message.id);
        if (message.success) {
          waiter.resolve(message.payload);
        } else {
          waiter.reject(new ToolCallError(message.error ?? "RPC error", message.kind ?? "ToolError", message.code));
        }
      });
      reader.on("close", () => {
        for (const waiter of pending.values()) {
          waiter.reject(new ToolCallError("RPC channel closed", "Cancelled"));
        }
        pending.clear();
      });
    }

    function rpc<T>(payload: Record<string, unknown>): Promise<T> {
      ensureReader();
      nextId += 1;
      const id = nextId;
      return new Promise<T>((resolve, reject) => {
        pending.set(id, { resolve, reject });
        send({ type: "rpc_request", id, payload });
      });
    }

    export function call<T = unknown>(tool: string, args: Record<string, unknown> = {}): Promise<T> {
      return rpc<T>({ method: "call", tool, args });
    }

    export function fetchUrl(url: string): Promise<unknown> {
      return rpc({ method: "fetch", url });
    }

    function redirect(kind: "stdout" | "stderr") {
      return (...parts: unknown[]): void => {
        const text = parts.map((p) => (typeof p === "string" ? p : JSON.stringify(p))).join(" ");
        send({ type: kind, data: text + "\\n" });
      };
    }

    export async function run(main: () => Promise<unknown>): Promise<void> {
      console.log = redirect("stdout");
      console.info = redirect("stdout");
      console.warn = redirect("stderr");
      console.error = redirect("stderr");
      try {
        const value = await main();
        send({ type: "result", value: value === undefined ? null : value });
        process.exitCode = 0;
      } catch (err) {
        const e = err as any;
        send({ type: "error", kind: e?.kind ?? "Internal", message: String(e?.message ?? e), code: e?.code ?? null });
        process.exitCode = 1;
      } finally {
        reader?.close();
        process.stdin.destroy();
      }
    }
    """
).lstrip()

TS_LAUNCHER = textwrap.dedent(
    """
    // Generated by mcpx; do not edit.
    import { run } from "./dispatcher";
    import { main } from "./main";

    run(main);
    """
).lstrip()

LAUNCHERS = {Language.PYTHON: "_launch.py", Language.TYPESCRIPT: "_launch.ts"}


def unit_files(unit: GeneratedUnit, level: IsolationLevel) -> dict[str, str]:
    """All files of a sandbox workdir, keyed by relative path."""
    files = {stub.path: stub.content for stub in unit.tool_stubs}
    if unit.language is Language.PYTHON:
        files["dispatcher.py"] = PY_DISPATCHER
        files["main.py"] = unit.entry
        files["_launch.py"] = VM_RUNNER if level is IsolationLevel.VM else PY_LAUNCHER
    else:
        files["dispatcher.ts"] = TS_DISPATCHER
        files["main.ts"] = unit.entry
        files["_launch.ts"] = TS_LAUNCHER
    return files


def write_unit(unit: GeneratedUnit, workdir: Path, level: IsolationLevel) -> str:
    """Write the unit and its preamble under ``workdir``; return the launcher name."""
    try:
        for relative, content in sorted(unit_files(unit, level).items()):
            path = workdir / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
    except OSError as exc:
        raise McpxIOError(f"Cannot write sandbox unit to {workdir}: {exc}") from exc
    return LAUNCHERS[unit.language]
