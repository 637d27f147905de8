"""
MCPX Code Validator

Static inspection of a generated unit before anything runs. Produces a risk
score (0-100, the capped sum of violation weights), a categorical risk level
and the list of violations with their locations.

Checks:
- lexical patterns for code evaluation, shell invocation, direct network
  access, reflective access and environment/secret reads (string and
  comment contents are blanked first, so literals never match)
- raw filesystem writes, flagged harder when they target paths outside the
  working directory
- import allowlist per language (dispatcher, generated servers, and a small
  set of standard utilities)
- size cap on the entry body and a per-function cyclomatic estimate

The unit proceeds only if the level is below critical and no violation has
critical severity. Output is deterministic for the same input.
"""

from __future__ import annotations

import ast
import io
import re
import tokenize
from collections.abc import Iterable

from mcpx.core.models import (
    GeneratedUnit,
    Language,
    RiskLevel,
    Severity,
    ValidationReport,
    Violation,
)

SEVERITY_WEIGHTS = {
    Severity.LOW: 10,
    Severity.MEDIUM: 25,
    Severity.HIGH: 40,
    Severity.CRITICAL: 100,
}

MAX_ENTRY_LINES = 500
MAX_CYCLOMATIC = 20

PYTHON_ALLOWED_IMPORTS = frozenset({
    "__future__", "asyncio", "collections", "dataclasses", "datetime", "decimal",
    "dispatcher", "enum", "fractions", "functools", "itertools", "json", "math",
    "re", "servers", "statistics", "string", "textwrap", "typing",
})

PYTHON_DANGEROUS_IMPORTS = frozenset({
    "builtins", "ctypes", "code", "codeop", "importlib", "io", "marshal", "mmap",
    "multiprocessing", "os", "pathlib", "pickle", "pty", "resource", "runpy",
    "shutil", "signal", "socket", "ssl", "subprocess", "sys", "tempfile",
    "threading", "urllib", "http", "ftplib", "smtplib", "telnetlib", "requests",
    "httpx", "aiohttp", "glob", "posix", "gc", "inspect", "operator",
})

TS_DANGEROUS_MODULES = frozenset({
    "child_process", "fs", "fs/promises", "net", "http", "https", "http2", "dgram",
    "dns", "tls", "vm", "worker_threads", "cluster", "os", "process", "module",
    "v8", "inspector", "bun", "bun:ffi", "bun:sqlite", "undici", "axios",
    "node-fetch",
})

# Calls that resolve an attribute from a string argument.
PY_REFLECTIVE_CALLS = frozenset({
    "getattr", "setattr", "delattr", "hasattr", "attrgetter", "methodcaller", "get_field",
})

SECRET_PATH_RE = re.compile(
    r"(\.ssh/|id_rsa|id_ed25519|/etc/passwd|/etc/shadow|\.aws/credentials|\.netrc|\.npmrc|\.pypirc|\.docker/config\.json)"
)


class _Rule:
    __slots__ = ("kind", "severity", "pattern", "message")

    def __init__(self, kind: str, severity: Severity, pattern: str, message: str):
        self.kind = kind
        self.severity = severity
        self.pattern = re.compile(pattern)
        self.message = message


PYTHON_RULES = (
    _Rule("code_eval", Severity.CRITICAL, r"\beval\s*\(", "dynamic evaluation via eval()"),
    _Rule("code_eval", Severity.CRITICAL, r"\bexec\s*\(", "dynamic evaluation via exec()"),
    _Rule("code_eval", Severity.CRITICAL, r"\bcompile\s*\(", "code compilation via compile()"),
    _Rule("dynamic_import", Severity.CRITICAL, r"\b__import__\s*\(", "dynamic import via __import__()"),
    _Rule("shell", Severity.CRITICAL, r"\bos\s*\.\s*(system|popen|exec\w*|spawn\w*|fork\w*)\b", "shell or process invocation"),
    _Rule("shell", Severity.CRITICAL, r"\bsubprocess\s*\.", "subprocess invocation"),
    _Rule("reflection", Severity.HIGH, r"\.\s*__(class|bases|base|subclasses|globals|builtins|code|mro|dict|getattribute|closure|func|self)__\b", "dunder attribute access"),
    _Rule("reflection", Severity.MEDIUM, r"\b(getattr|setattr|delattr|globals|locals|vars)\s*\(", "reflective access"),
    _Rule("reflection", Severity.HIGH, r"\.\s*(cr_frame|gi_frame|ag_frame|f_globals|f_builtins|f_locals|f_back|tb_frame|get_loop)\b", "frame or event-loop introspection"),
    _Rule("reflection", Severity.HIGH, r"\b(attrgetter|methodcaller|get_type_hints|singledispatch\w*|Formatter)\b", "attribute or annotation lookup by name"),
    _Rule("fs_write", Severity.HIGH, r"\.\s*(write_text|write_bytes|unlink|rmdir|rename|replace|touch|mkdir)\s*\(", "filesystem mutation"),
    _Rule("busy_loop", Severity.LOW, r"\bwhile\s+True\s*:", "unbounded loop"),
    _Rule("input", Severity.LOW, r"\binput\s*\(", "interactive input"),
)

TS_RULES = (
    _Rule("code_eval", Severity.CRITICAL, r"\beval\s*\(", "dynamic evaluation via eval()"),
    _Rule("code_eval", Severity.CRITICAL, r"\bnew\s+Function\s*\(|(?<![\w.])Function\s*\(", "dynamic evaluation via Function()"),
    _Rule("dynamic_import", Severity.CRITICAL, r"(?<![\w.])import\s*\(", "dynamic import()"),
    _Rule("dynamic_import", Severity.CRITICAL, r"(?<![\w.])require\s*\(", "module loading via require()"),
    _Rule("shell", Severity.CRITICAL, r"\bchild_process\b|\b(execSync|execFile|execFileSync|spawnSync)\b|(?<![\w.])(exec|spawn)\s*\(", "shell or process invocation"),
    _Rule("shell", Severity.CRITICAL, r"\bBun\s*\.\s*(spawn|spawnSync|\$)|\bDeno\s*\.\s*(run|Command)\b", "runtime process API"),
    _Rule("shell", Severity.CRITICAL, r"\bprocess\s*\.\s*(binding|dlopen|kill)\b", "process internals"),
    _Rule("network", Severity.CRITICAL, r"(?<![\w.])fetch\s*\(|\b(XMLHttpRequest|WebSocket|EventSource)\b", "direct network access (use fetchUrl)"),
    _Rule("prototype", Severity.HIGH, r"__proto__|\bconstructor\s*\[|\.\s*constructor\s*\.\s*constructor\b", "prototype manipulation"),
    _Rule("reflection", Severity.MEDIUM, r"\bglobalThis\b|\bReflect\s*\.|\bProxy\s*\(", "reflective access"),
    _Rule("fs_write", Severity.HIGH, r"\b(writeFile|writeFileSync|appendFile|appendFileSync|createWriteStream|unlink|unlinkSync|rmSync|rmdirSync)\s*\(|\bBun\s*\.\s*write\b|\bDeno\s*\.\s*write\w*\b", "filesystem mutation"),
    _Rule("busy_loop", Severity.LOW, r"\bwhile\s*\(\s*true\s*\)|\bfor\s*\(\s*;\s*;\s*\)", "unbounded loop"),
)

PY_ENV_RE = re.compile(r"\bos\s*\.\s*(environ|getenv|environb)\b")
TS_ENV_RE = re.compile(r"\b(process\s*\.\s*env|Bun\s*\.\s*env|Deno\s*\.\s*env|import\s*\.\s*meta\s*\.\s*env)\b")
TS_ENV_NAME_RE = re.compile(
    r"""\b(?:process|Bun)\s*\.\s*env\s*(?:\.\s*([A-Za-z_]\w*)|\[\s*['"]([^'"]+)['"]\s*\])"""
)
PY_ENV_NAME_RE = re.compile(
    r"""\bos\s*\.\s*(?:environ\s*\[\s*['"]([^'"]+)['"]|environ\s*\.\s*get\s*\(\s*['"]([^'"]+)['"]|getenv\s*\(\s*['"]([^'"]+)['"])"""
)

TS_IMPORT_RE = re.compile(
    r"""(?:^|[;\n])\s*(?:import|export)\s+(?:type\s+)?(?:[\w*{}\s,$]+?\s+from\s+)?['"]([^'"]+)['"]""",
    re.MULTILINE,
)
TS_COMPLEXITY_RE = re.compile(r"\b(if|for|while|case|catch)\b|&&|\|\||\?\?(?!=)|\?(?![.?:])")
TS_FUNCTION_RE = re.compile(
    r"\bfunction\b[^{;]*\{|=>\s*\{|\b(?!if\b|for\b|while\b|switch\b|catch\b)[A-Za-z_$][\w$]*\s*\([^()]*\)\s*(?::\s*[^{;]+)?\{"
)


# ─── Source preparation ─────────────────────────────────────

def blank_python(source: str, keep_strings: bool = False) -> str:
    """Blank out comments (and string contents) keeping line/column positions."""
    lines = source.splitlines(keepends=True)
    chars = [list(line) for line in lines]
    blank_types = {tokenize.COMMENT}
    if not keep_strings:
        blank_types.add(tokenize.STRING)
        middle = getattr(tokenize, "FSTRING_MIDDLE", None)
        if middle is not None:
            blank_types.add(middle)
    try:
        for tok in tokenize.generate_tokens(io.StringIO(source).readline):
            if tok.type not in blank_types:
                continue
            (srow, scol), (erow, ecol) = tok.start, tok.end
            for row in range(srow, erow + 1):
                if row - 1 >= len(chars):
                    break
                line = chars[row - 1]
                start = scol if row == srow else 0
                end = ecol if row == erow else len(line)
                for i in range(start, min(end, len(line))):
                    if line[i] not in "\r\n":
                        line[i] = " "
    except (tokenize.TokenError, IndentationError, SyntaxError):
        return _blank_regex(source, "#", keep_strings)
    return "".join("".join(line) for line in chars)


def blank_typescript(source: str, keep_strings: bool = False) -> str:
    """Blank out comments (and string/template contents) keeping positions."""
    out = list(source)
    i, n = 0, len(source)
    while i < n:
        ch = source[i]
        nxt = source[i + 1] if i + 1 < n else ""
        if ch == "/" and nxt == "/":
            while i < n and source[i] != "\n":
                out[i] = " "
                i += 1
            continue
        if ch == "/" and nxt == "*":
            end = source.find("*/", i + 2)
            end = n if end == -1 else end + 2
            for j in range(i, end):
                if source[j] != "\n":
                    out[j] = " "
            i = end
            continue
        if ch in "'\"`":
            j = i + 1
            while j < n and source[j] != ch:
                if source[j] == "\\":
                    j += 1
                elif ch != "`" and source[j] == "\n":
                    break
                j += 1
            if not keep_strings:
                for k in range(i + 1, min(j, n)):
                    if source[k] != "\n":
                        out[k] = " "
            i = j + 1
            continue
        i += 1
    return "".join(out)


def _blank_regex(source: str, comment: str, keep_strings: bool) -> str:
    result = []
    for line in source.splitlines(keepends=True):
        if not keep_strings:
            line = re.sub(r"(['\"])(?:\\.|(?!\1).)*\1", lambda m: m.group(1) + " " * (len(m.group(0)) - 2) + m.group(1), line)
        idx = line.find(comment)
        if idx != -1:
            line = line[:idx] + " " * (len(line.rstrip("\r\n")) - idx) + line[len(line.rstrip("\r\n")):]
        result.append(line)
    return "".join(result)


def _position(text: str, offset: int) -> tuple[int, int]:
    line = text.count("\n", 0, offset) + 1
    column = offset - (text.rfind("\n", 0, offset) + 1)
    return line, column


def _line_text(source: str, line: int) -> str:
    lines = source.splitlines()
    return lines[line - 1].strip()[:120] if 0 < line <= len(lines) else ""


# ─── Validator ──────────────────────────────────────────────

class CodeValidator:
    """Scores a generated unit and decides whether it may run."""

    def __init__(self, env_allowlist: Iterable[str] = ()):
        self._env_allowlist = frozenset(env_allowlist)

    def validate(self, unit: GeneratedUnit) -> ValidationReport:
        """Inspect the entry and every stub of ``unit``."""
        violations: list[Violation] = []
        sources = [("entry", unit.entry)] + [(f.path, f.content) for f in unit.tool_stubs]
        for name, source in sources:
            violations.extend(self.check_source(source, unit.language, name))

        entry_lines = len(unit.entry.splitlines())
        if entry_lines > MAX_ENTRY_LINES:
            violations.append(self._violation(
                "size", Severity.HIGH,
                f"entry body has {entry_lines} lines (limit {MAX_ENTRY_LINES})", "entry",
            ))
        return self.report(violations)

    def validate_source(self, source: str, language: Language, name: str = "entry") -> ValidationReport:
        violations = self.check_source(source, Language.parse(language), name)
        if name == "entry" and len(source.splitlines()) > MAX_ENTRY_LINES:
            violations.append(self._violation(
                "size", Severity.HIGH,
                f"entry body has {len(source.splitlines())} lines (limit {MAX_ENTRY_LINES})", name,
            ))
        return self.report(violations)

    @staticmethod
    def report(violations: list[Violation]) -> ValidationReport:
        ordered = sorted(violations, key=lambda v: (v.source, v.line, v.column, v.kind, v.message))
        score = min(100, sum(v.weight for v in ordered))
        return ValidationReport(
            risk_score=score,
            risk_level=RiskLevel.from_score(score),
            violations=ordered,
        )

    def check_source(self, source: str, language: Language, name: str) -> list[Violation]:
        if language is Language.PYTHON:
            return self._check_python(source, name)
        return self._check_typescript(source, name)

    # ─── Python ─────────────────────────────────────────────

    def _check_python(self, source: str, name: str) -> list[Violation]:
        violations: list[Violation] = []
        code = blank_python(source)
        violations.extend(self._lexical(code, source, PYTHON_RULES, name))
        violations.extend(self._secret_paths(source, name))
        violations.extend(self._env_access(code, source, PY_ENV_RE, PY_ENV_NAME_RE, name))

        try:
            tree = ast.parse(source)
        except SyntaxError as exc:
            violations.append(self._violation(
                "syntax", Severity.HIGH, f"syntax error: {exc.msg}", name,
                line=exc.lineno or 0, column=(exc.offset or 1) - 1,
            ))
            return violations

        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                for alias in node.names:
                    violations.extend(self._python_import(alias.name, 0, node, name, source))
            elif isinstance(node, ast.ImportFrom):
                violations.extend(self._python_import(node.module or "", node.level, node, name, source))
            elif isinstance(node, ast.Call):
                if isinstance(node.func, ast.Name) and node.func.id == "open":
                    violations.extend(self._python_open(node, name, source))
                violations.extend(self._python_reflective_call(node, name, source))
            elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                complexity = python_complexity(node)
                if complexity > MAX_CYCLOMATIC:
                    violations.append(self._violation(
                        "complexity", Severity.MEDIUM,
                        f"function '{node.name}' has cyclomatic complexity {complexity} (limit {MAX_CYCLOMATIC})",
                        name, line=node.lineno, column=node.col_offset,
                        snippet=_line_text(source, node.lineno),
                    ))
        return violations

    def _python_import(self, module: str, level: int, node: ast.AST, name: str, source: str) -> list[Violation]:
        if level > 0:
            return []
        root = module.split(".")[0]
        if root in PYTHON_ALLOWED_IMPORTS:
            return []
        severity = Severity.CRITICAL if root in PYTHON_DANGEROUS_IMPORTS else Severity.HIGH
        return [self._violation(
            "import_not_allowed", severity, f"import of '{module}' is not allowed", name,
            line=getattr(node, "lineno", 0), column=getattr(node, "col_offset", 0),
            snippet=_line_text(source, getattr(node, "lineno", 0)),
        )]

    def _python_reflective_call(self, node: ast.Call, name: str, source: str) -> list[Violation]:
        func = node.func
        called = func.id if isinstance(func, ast.Name) else func.attr if isinstance(func, ast.Attribute) else ""
        if called not in PY_REFLECTIVE_CALLS:
            return []
        violations = []
        for arg in [*node.args, *(kw.value for kw in node.keywords)]:
            if not (isinstance(arg, ast.Constant) and isinstance(arg.value, str)):
                continue
            if not any(part.startswith("_") for part in re.split(r"[.\[\]]", arg.value)):
                continue
            violations.append(self._violation(
                "reflection", Severity.CRITICAL,
                f"private attribute '{arg.value}' named by string in {called}()", name,
                line=node.lineno, column=node.col_offset, snippet=_line_text(source, node.lineno),
            ))
        return violations

    def _python_open(self, node: ast.Call, name: str, source: str) -> list[Violation]:
        mode = ""
        if len(node.args) > 1 and isinstance(node.args[1], ast.Constant):
            mode = str(node.args[1].value)
        for kw in node.keywords:
            if kw.arg == "mode" and isinstance(kw.value, ast.Constant):
                mode = str(kw.value.value)
        if not any(flag in mode for flag in "wax+"):
            return []
        target = node.args[0] if node.args else None
        outside = not (
            isinstance(target, ast.Constant)
            and isinstance(target.value, str)
            and not target.value.startswith(("/", "~"))
            and ".." not in target.value.split("/")
        )
        if not outside:
            return []
        return [self._violation(
            "fs_write_outside_workdir", Severity.HIGH,
            "file write to a path outside the working directory", name,
            line=node.lineno, column=node.col_offset, snippet=_line_text(source, node.lineno),
        )]

    # ─── TypeScript ─────────────────────────────────────────

    def _check_typescript(self, source: str, name: str) -> list[Violation]:
        violations: list[Violation] = []
        code = blank_typescript(source)
        with_strings = blank_typescript(source, keep_strings=True)
        violations.extend(self._lexical(code, source, TS_RULES, name))
        violations.extend(self._secret_paths(source, name))
        violations.extend(self._env_access(code, with_strings, TS_ENV_RE, TS_ENV_NAME_RE, name))

        for match in TS_IMPORT_RE.finditer(with_strings):
            specifier = match.group(1)
            if self._ts_import_allowed(specifier):
                continue
            bare = specifier.removeprefix("node:")
            severity = Severity.CRITICAL if bare in TS_DANGEROUS_MODULES or specifier.startswith("node:") else Severity.HIGH
            line, column = _position(with_strings, match.start(1))
            violations.append(self._violation(
                "import_not_allowed", severity, f"import of '{specifier}' is not allowed", name,
                line=line, column=column, snippet=_line_text(source, line),
            ))

        for func_name, line, complexity in typescript_complexity(code):
            if complexity > MAX_CYCLOMATIC:
                violations.append(self._violation(
                    "complexity", Severity.MEDIUM,
                    f"function '{func_name}' has cyclomatic complexity {complexity} (limit {MAX_CYCLOMATIC})",
                    name, line=line, snippet=_line_text(source, line),
                ))
        return violations

    @staticmethod
    def _ts_import_allowed(specifier: str) -> bool:
        if not specifier.startswith(("./", "../")):
            return False
        parts = [p for p in specifier.split("/") if p not in (".", "..")]
        return bool(parts) and (parts[0] == "servers" or parts[-1] == "dispatcher" or len(parts) == 1)

    # ─── Shared checks ──────────────────────────────────────

    def _lexical(self, code: str, source: str, rules: Iterable[_Rule], name: str) -> list[Violation]:
        violations = []
        for rule in rules:
            for match in rule.pattern.finditer(code):
                line, column = _position(code, match.start())
                violations.append(self._violation(
                    rule.kind, rule.severity, rule.message, name,
                    line=line, column=column, snippet=_line_text(source, line),
                ))
        return violations

    def _secret_paths(self, source: str, name: str) -> list[Violation]:
        violations = []
        for match in SECRET_PATH_RE.finditer(source):
            line, column = _position(source, match.start())
            violations.append(self._violation(
                "secret_access", Severity.HIGH, f"reference to credential path '{match.group(1)}'", name,
                line=line, column=column, snippet=_line_text(source, line),
            ))
        return violations

    def _env_access(
        self,
        code: str,
        with_strings: str,
        access_re: re.Pattern[str],
        name_re: re.Pattern[str],
        name: str,
    ) -> list[Violation]:
        violations = []
        named_offsets = set()
        for match in name_re.finditer(with_strings):
            variable = next(g for g in match.groups() if g)
            named_offsets.add(match.start())
            if variable in self._env_allowlist:
                continue
            line, column = _position(with_strings, match.start())
            violations.append(self._violation(
                "env_access", Severity.HIGH,
                f"environment variable '{variable}' is not in the allowlist", name,
                line=line, column=column, snippet=_line_text(with_strings, line),
            ))
        for match in access_re.finditer(code):
            if match.start() in named_offsets:
                continue
            line, column = _position(code, match.start())
            violations.append(self._violation(
                "env_access", Severity.HIGH, "unrestricted environment access", name,
                line=line, column=column, snippet=_line_text(with_strings, line),
            ))
        return violations

    @staticmethod
    def _violation(
        kind: str,
        severity: Severity,
        message: str,
        source: str,
        line: int = 0,
        column: int = 0,
        snippet: str = "",
    ) -> Violation:
        return Violation(
            kind=kind,
            severity=severity,
            weight=SEVERITY_WEIGHTS[severity],
            message=message,
            line=line,
            column=column,
            snippet=snippet,
            source=source,
        )


# ─── Complexity ─────────────────────────────────────────────

class _ComplexityVisitor(ast.NodeVisitor):
    def __init__(self) -> None:
        self.count = 0

    def generic_visit(self, node: ast.AST) -> None:
        if isinstance(node, (ast.If, ast.For, ast.AsyncFor, ast.While, ast.IfExp, ast.ExceptHandler)):
            self.count += 1
        elif isinstance(node, ast.BoolOp):
            self.count += len(node.values) - 1
        elif isinstance(node, ast.comprehension):
            self.count += 1 + len(node.ifs)
        elif isinstance(node, ast.match_case):
            self.count += 1
        super().generic_visit(node)

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        return

    visit_AsyncFunctionDef = visit_FunctionDef  # type: ignore[assignment]
    visit_Lambda = visit_FunctionDef  # type: ignore[assignment]


def python_complexity(func: ast.FunctionDef | ast.AsyncFunctionDef) -> int:
    """Control-flow keywords in ``func`` (nested functions excluded) plus one."""
    visitor = _ComplexityVisitor()
    for stmt in func.body:
        visitor.visit(stmt)
    return visitor.count + 1


def typescript_complexity(code: str) -> list[tuple[str, int, int]]:
    """Estimate ``(name, line, complexity)`` per function in comment/string-blanked code."""
    results = []
    for match in TS_FUNCTION_RE.finditer(code):
        open_brace = match.end() - 1
        depth = 0
        end = len(code)
        for i in range(open_brace, len(code)):
            if code[i] == "{":
                depth += 1
            elif code[i] == "}":
                depth -= 1
                if depth == 0:
                    end = i
                    break
        body = code[open_brace:end]
        name_match = re.search(r"function\s+([\w$]+)|([\w$]+)\s*\(", match.group(0))
        func_name = next((g for g in name_match.groups() if g), "<anonymous>") if name_match else "<anonymous>"
        line, _ = _position(code, match.start())
        results.append((func_name, line, len(TS_COMPLEXITY_RE.findall(body)) + 1))
    return results
