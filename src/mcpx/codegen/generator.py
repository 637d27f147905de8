"""
MCPX Wrapper Generator

Renders selected tool descriptors into typed async wrappers, one module per
tool plus one index module per server. Every wrapper delegates to the single
sandbox dispatcher ``call(tool_fqn, args)``; transport details never appear
in generated code.

Layout under a unit root:

    python:      servers/__init__.py
                 servers/<server>/__init__.py        (index)
                 servers/<server>/<tool>.py
    typescript:  servers/<server>/index.ts           (index)
                 servers/<server>/<toolName>.ts

Incremental mode (``generate``) keeps a manifest of descriptor hashes in the
output directory and only rewrites modules whose hash changed.
"""

from __future__ import annotations

import hashlib
import json
import os
from collections.abc import Sequence
from pathlib import Path

from mcpx.codegen import templates
from mcpx.codegen.types import (
    TypeProjector,
    camel_case,
    pascal_case,
    snake_case,
    ts_property_key,
)
from mcpx.core.models import (
    GeneratedFile,
    GenerationReport,
    Language,
    ToolDescriptor,
)
from mcpx.exceptions import GenerationBusy, McpxIOError
from mcpx.logging import get_logger

logger = get_logger("mcpx.codegen")

MANIFEST_NAME = ".mcpx-manifest.json"
LOCK_NAME = ".mcpx-generation.lock"


def _sha(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters, rounded up."""
    return -(-len(text) // 4)


class WrapperGenerator:
    """Renders tool wrappers; pure apart from ``generate``."""

    # ─── Rendering ──────────────────────────────────────────

    def render(self, descriptors: Sequence[ToolDescriptor], language: Language) -> list[GeneratedFile]:
        """Render all modules for ``descriptors``, ordered by path."""
        language = Language.parse(language)
        files: list[GeneratedFile] = []
        if language is Language.PYTHON:
            files.append(self._file("servers/__init__.py", templates.render(
                templates.PY_PACKAGE_MODULE, HEADER=templates.PY_HEADER)))

        for server, planned in self.plan(descriptors, language).items():
            server_dir = f"servers/{snake_case(server)}"
            exported: list[tuple[str, str, str]] = []
            for descriptor, func in planned:
                if language is Language.PYTHON:
                    content = self.render_python_tool(descriptor, func)
                    path = f"{server_dir}/{func}.py"
                else:
                    content = self.render_typescript_tool(descriptor, func)
                    path = f"{server_dir}/{func}.ts"
                files.append(
                    GeneratedFile(
                        path=path,
                        content=content,
                        tool=descriptor.fqn,
                        content_hash=descriptor.content_hash,
                    )
                )
                exported.append((func, func, pascal_case(descriptor.name)))

            if language is Language.PYTHON:
                files.append(self._file(f"{server_dir}/__init__.py", self._python_index(server, exported)))
            else:
                files.append(self._file(f"{server_dir}/index.ts", self._typescript_index(server, exported)))

        files.sort(key=lambda f: f.path)
        return files

    def plan(
        self, descriptors: Sequence[ToolDescriptor], language: Language
    ) -> dict[str, list[tuple[ToolDescriptor, str]]]:
        """Group tools by server and assign each a unique exported function name."""
        language = Language.parse(language)
        by_server: dict[str, list[tuple[ToolDescriptor, str]]] = {}
        used: dict[str, set[str]] = {}
        for descriptor in sorted(descriptors, key=lambda d: d.key):
            func = self.function_name(descriptor, language)
            taken = used.setdefault(descriptor.server, set())
            while func in taken:
                func = f"{func}_2"
            taken.add(func)
            by_server.setdefault(descriptor.server, []).append((descriptor, func))
        return by_server

    @staticmethod
    def function_name(descriptor: ToolDescriptor, language: Language) -> str:
        if Language.parse(language) is Language.PYTHON:
            return snake_case(descriptor.name)
        return camel_case(descriptor.name)

    @staticmethod
    def module_path(descriptor: ToolDescriptor, language: Language) -> str:
        """Import path of the server index the tool is exported from."""
        if Language.parse(language) is Language.PYTHON:
            return f"servers.{snake_case(descriptor.server)}"
        return f"./servers/{snake_case(descriptor.server)}"

    @staticmethod
    def _file(path: str, content: str) -> GeneratedFile:
        return GeneratedFile(path=path, content=content, content_hash=_sha(content))

    def render_python_tool(self, descriptor: ToolDescriptor, func: str) -> str:
        projector = TypeProjector(descriptor, Language.PYTHON)
        projector.uses.update({"Any", "Dict"})
        shape = pascal_case(descriptor.name)
        properties = descriptor.properties
        required = set(descriptor.required)

        params: list[str] = []
        arg_lines: list[str] = []
        taken: set[str] = set()
        ordered = [k for k in sorted(properties) if k in required]
        ordered += [k for k in sorted(properties) if k not in required]
        for key in ordered:
            pname = snake_case(key)
            while pname in taken or pname in ("args", "TOOL"):
                pname = f"{pname}_"
            taken.add(pname)
            ptype = projector.project(properties[key], name=f"{shape}{pascal_case(key)}")
            if key in required:
                params.append(f"{pname}: {ptype}")
                arg_lines.append(f"    args[{json.dumps(key)}] = {pname}\n")
            else:
                projector.uses.add("Optional")
                params.append(f"{pname}: Optional[{ptype}] = None")
                arg_lines.append(f"    if {pname} is not None:\n        args[{json.dumps(key)}] = {pname}\n")

        returns = (
            projector.project(descriptor.output_schema, name=f"{shape}Result")
            if descriptor.output_schema
            else "Any"
        )
        shapes = "".join(f"{declaration}\n" for declaration in projector.shapes.values())
        signature = ("*, " + ", ".join(params)) if params else ""

        return templates.render(
            templates.PY_TOOL_MODULE,
            HEADER=templates.PY_HEADER,
            TOOL_FQN=descriptor.fqn,
            HASH=descriptor.content_hash[:16],
            TYPING=", ".join(sorted(projector.uses)),
            SHAPES=shapes + "\n" if shapes else "",
            FUNC=func,
            SIGNATURE=signature,
            RETURN=returns,
            DOC=self._python_doc(descriptor),
            ARG_LINES="".join(arg_lines),
        )

    @staticmethod
    def _python_doc(descriptor: ToolDescriptor) -> str:
        lines = [descriptor.description or f"Call {descriptor.fqn}."]
        documented = [
            (key, prop.get("description", ""))
            for key, prop in sorted(descriptor.properties.items())
            if isinstance(prop, dict) and prop.get("description")
        ]
        if documented:
            lines.append("")
            lines.append("    Args:")
            lines.extend(f"        {snake_case(key)}: {text}" for key, text in documented)
            lines.append("    ")
        doc = "\n".join(lines)
        return doc.replace("\\", "\\\\").replace('"""', '\\"\\"\\"')

    def render_typescript_tool(self, descriptor: ToolDescriptor, func: str) -> str:
        projector = TypeProjector(descriptor, Language.TYPESCRIPT)
        properties = descriptor.properties
        required = set(descriptor.required)

        fields = []
        for key in sorted(properties):
            prop = properties[key]
            ptype = projector.project(prop)
            optional = "" if key in required else "?"
            if isinstance(prop, dict) and prop.get("description"):
                fields.append(f"  /** {self._ts_comment(prop['description'])} */\n")
            fields.append(f"  {ts_property_key(key)}{optional}: {ptype};\n")

        returns = projector.project(descriptor.output_schema) if descriptor.output_schema else "unknown"
        doc = f" * {self._ts_comment(descriptor.description or 'Call ' + descriptor.fqn + '.')}\n"

        return templates.render(
            templates.TS_TOOL_MODULE,
            HEADER=templates.TS_HEADER,
            TOOL_FQN=descriptor.fqn,
            HASH=descriptor.content_hash[:16],
            TYPE=pascal_case(descriptor.name),
            FIELDS="".join(fields),
            RETURN=returns,
            DOC=doc,
            FUNC=func,
            DEFAULT="" if required else " = {}",
        )

    @staticmethod
    def _ts_comment(text: str) -> str:
        return " ".join(text.split()).replace("*/", "* /")

    @staticmethod
    def _python_index(server: str, exported: list[tuple[str, str, str]]) -> str:
        imports = "".join(f"from .{stem} import {func}\n" for stem, func, _ in exported)
        names = "".join(f"    {json.dumps(func)},\n" for _, func, _ in sorted(exported, key=lambda e: e[1]))
        return templates.render(
            templates.PY_INDEX_MODULE,
            HEADER=templates.PY_HEADER,
            SERVER=server,
            IMPORTS=imports,
            ALL=names,
        )

    @staticmethod
    def _typescript_index(server: str, exported: list[tuple[str, str, str]]) -> str:
        lines = []
        for stem, func, type_name in exported:
            lines.append(f'export {{ {func} }} from "./{stem}";')
            lines.append(f'export type {{ {type_name}Input, {type_name}Output }} from "./{stem}";')
        return templates.render(
            templates.TS_INDEX_MODULE,
            HEADER=templates.TS_HEADER,
            SERVER=server,
            EXPORTS="\n".join(lines),
        )

    # ─── Incremental generation ─────────────────────────────

    def generate(
        self,
        descriptors: Sequence[ToolDescriptor],
        language: Language,
        output_root: str | Path,
        incremental: bool = True,
    ) -> GenerationReport:
        """Write wrappers under ``output_root/<language>``.

        Unchanged tool modules are skipped, modules of removed tools are
        deleted, changed ones overwritten. Only one generation may own an
        output directory at a time.

        Raises:
            GenerationBusy: another generation holds the directory lock.
            McpxIOError: a file could not be written.
        """
        language = Language.parse(language)
        target = Path(output_root) / language.value
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise McpxIOError(f"Cannot create {target}: {exc}") from exc

        lock = _DirectoryLock(target / LOCK_NAME)
        lock.acquire()
        try:
            return self._generate_locked(descriptors, language, target, incremental)
        finally:
            lock.release()

    def _generate_locked(
        self,
        descriptors: Sequence[ToolDescriptor],
        language: Language,
        target: Path,
        incremental: bool,
    ) -> GenerationReport:
        manifest_path = target / MANIFEST_NAME
        previous: dict[str, str] = {}
        if incremental and manifest_path.exists():
            try:
                previous = json.loads(manifest_path.read_text(encoding="utf-8")).get("files", {})
            except (OSError, json.JSONDecodeError):
                logger.warning("Unreadable generation manifest; regenerating everything")
                previous = {}

        files = self.render(descriptors, language)
        report = GenerationReport()
        current: dict[str, str] = {}

        for generated in files:
            current[generated.path] = generated.content_hash
            path = target / generated.path
            if (
                incremental
                and previous.get(generated.path) == generated.content_hash
                and path.exists()
            ):
                report.skipped.append(generated.path)
                continue
            if generated.tool is None and path.exists() and path.read_text(encoding="utf-8") == generated.content:
                report.skipped.append(generated.path)
                continue
            self._write(path, generated.content)
            report.written.append(generated.path)

        for stale in sorted(set(previous) - set(current)):
            path = target / stale
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                raise McpxIOError(f"Cannot delete {path}: {exc}") from exc
            report.deleted.append(stale)
            self._prune_empty_dirs(path.parent, target)

        if current != previous or not manifest_path.exists():
            manifest = json.dumps({"files": current, "language": language.value}, indent=2, sort_keys=True)
            self._write(manifest_path, manifest + "\n")

        logger.info(
            f"Generated {len(report.written)} written, {len(report.skipped)} skipped, "
            f"{len(report.deleted)} deleted",
            extra={"phase": "generation"},
        )
        return report

    @staticmethod
    def _write(path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_text(content, encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            raise McpxIOError(f"Cannot write {path}: {exc}") from exc

    @staticmethod
    def _prune_empty_dirs(directory: Path, stop: Path) -> None:
        while directory != stop and directory.is_dir() and not any(directory.iterdir()):
            directory.rmdir()
            directory = directory.parent


class _DirectoryLock:
    """Exclusive lock file; a lock left by a dead process is taken over."""

    def __init__(self, path: Path):
        self._path = path
        self._held = False

    def acquire(self) -> None:
        for _ in range(2):
            try:
                fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if self._owner_alive():
                    raise GenerationBusy(str(self._path.parent)) from None
                logger.warning(f"Removing stale generation lock {self._path}")
                self._path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w") as fh:
                fh.write(str(os.getpid()))
            self._held = True
            return
        raise GenerationBusy(str(self._path.parent))

    def _owner_alive(self) -> bool:
        try:
            pid = int(self._path.read_text().strip() or "0")
        except (OSError, ValueError):
            return True
        if pid <= 0:
            return True
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def release(self) -> None:
        if self._held:
            self._path.unlink(missing_ok=True)
            self._held = False
