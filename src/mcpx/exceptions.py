"""
MCPX Custom Exceptions

Structured exception hierarchy for the execution engine.
All MCPX-specific exceptions inherit from McpxError and carry a ``kind``
(the stable category name surfaced to callers and in audit records) and
an ``exit_code`` used by the CLI.

Exception hierarchy:
    McpxError
    +-- ConfigError             (invalid or missing configuration/metadata)
    +-- NotFound                (exact index lookup missed)
    +-- DiscoveryEmpty          (no tool met the relevance threshold)
    +-- SchemaUnsupported       (construct outside the recognized subset)
    +-- SchemaRefUnresolved     ($ref not found in definitions)
    +-- GenerationBusy          (output root owned by another generation)
    +-- PolicyDenied            (validator rejected the unit)
    +-- SandboxUnavailable      (isolation level not supported on this host)
    +-- Timeout                 (wall-clock or per-request deadline)
    +-- Cancelled               (caller cancellation or sandbox teardown)
    +-- ServerExited            (tool server died)
    +-- TransportError          (stdio pipe or spawn problem)
    +-- ToolError               (JSON-RPC error response)
    +-- McpxIOError             (filesystem failure)
    +-- Internal                (everything else)
"""

from __future__ import annotations

from typing import Any


class McpxError(Exception):
    """Base exception for all MCPX errors."""

    kind = "Internal"
    exit_code = 1

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def one_line(self, limit: int = 200) -> str:
        """Render ``Kind: message`` on a single bounded line."""
        text = " ".join(f"{self.kind}: {self.message}".split())
        if len(text) > limit:
            text = text[: limit - 3] + "..."
        return text


class ConfigError(McpxError):
    """Raised for invalid or missing configuration and metadata files."""

    kind = "ConfigError"

    def __init__(self, message: str, path: str | None = None, details: dict | None = None):
        super().__init__(
            message if path is None else f"{path}: {message}",
            details={"path": path, **(details or {})},
        )
        self.path = path


class NotFound(McpxError):
    """Raised when an exact tool lookup misses."""

    kind = "NotFound"

    def __init__(self, server: str, name: str):
        super().__init__(
            f"Tool '{server}.{name}' is not indexed",
            details={"server": server, "name": name},
        )
        self.server = server
        self.name = name


class DiscoveryEmpty(McpxError):
    """Raised when no tool clears the relevance threshold."""

    kind = "DiscoveryEmpty"
    exit_code = 2

    def __init__(self, intent: str, threshold: float):
        super().__init__(
            f"No tool scored >= {threshold} for the given intent",
            details={"threshold": threshold, "intent_length": len(intent)},
        )
        self.threshold = threshold


class SchemaUnsupported(McpxError):
    """Raised when a tool schema uses a construct the generator cannot project."""

    kind = "SchemaUnsupported"

    def __init__(self, tool: str, construct: str):
        super().__init__(
            f"Tool '{tool}' uses unsupported schema construct '{construct}'",
            details={"tool": tool, "construct": construct},
        )
        self.tool = tool
        self.construct = construct


class SchemaRefUnresolved(McpxError):
    """Raised when a ``$ref`` cannot be found in the descriptor's definitions."""

    kind = "SchemaRefUnresolved"

    def __init__(self, tool: str, ref: str):
        super().__init__(
            f"Tool '{tool}' references unknown definition '{ref}'",
            details={"tool": tool, "ref": ref},
        )
        self.tool = tool
        self.ref = ref


class GenerationBusy(McpxError):
    """Raised when another generation currently owns the output directory."""

    kind = "GenerationBusy"

    def __init__(self, output_root: str):
        super().__init__(
            f"Output root '{output_root}' is owned by another generation",
            details={"output_root": output_root},
        )
        self.output_root = output_root


class PolicyDenied(McpxError):
    """Raised when the code validator rejects a unit.

    Carries the full violation list so it can be attached to the audit trail.
    """

    kind = "PolicyDenied"
    exit_code = 3

    def __init__(
        self,
        message: str,
        violations: list[Any] | None = None,
        risk_score: int = 0,
        details: dict | None = None,
    ):
        super().__init__(
            message,
            details={"risk_score": risk_score, **(details or {})},
        )
        self.violations = list(violations or [])
        self.risk_score = risk_score


class SandboxUnavailable(McpxError):
    """Raised when the requested isolation level cannot run on this host."""

    kind = "SandboxUnavailable"
    exit_code = 4

    def __init__(self, level: str, reason: str):
        super().__init__(
            f"Isolation level '{level}' unavailable: {reason}",
            details={"isolation_level": level, "reason": reason},
        )
        self.level = level
        self.reason = reason


class Timeout(McpxError):
    """Raised when a wall-clock or per-request deadline is exceeded."""

    kind = "Timeout"
    exit_code = 5

    def __init__(self, message: str, timeout_ms: int | None = None, details: dict | None = None):
        super().__init__(message, details={"timeout_ms": timeout_ms, **(details or {})})
        self.timeout_ms = timeout_ms


class Cancelled(McpxError):
    """Raised on caller cancellation or when the enclosing sandbox is torn down."""

    kind = "Cancelled"


class ServerExited(McpxError):
    """Raised when a tool server process exits unexpectedly."""

    kind = "ServerExited"

    def __init__(self, server: str, returncode: int | None = None, details: dict | None = None):
        super().__init__(
            f"Tool server '{server}' exited (returncode={returncode})",
            details={"server": server, "returncode": returncode, **(details or {})},
        )
        self.server = server
        self.returncode = returncode


class TransportError(McpxError):
    """Raised for stdio transport problems (spawn failure, broken pipe)."""

    kind = "TransportError"


class ToolError(McpxError):
    """A JSON-RPC error response from a tool server.

    Preserves the remote ``code``, ``message`` and optional ``data``.
    """

    kind = "ToolError"

    def __init__(self, code: int, message: str, data: Any = None, server: str | None = None):
        super().__init__(
            f"Tool server error {code}: {message}",
            details={"code": code, "server": server},
        )
        self.code = code
        self.remote_message = message
        self.data = data
        self.server = server


class McpxIOError(McpxError):
    """Raised for filesystem failures while reading or writing artifacts."""

    kind = "IOError"


class Internal(McpxError):
    """Raised for unexpected failures inside a pipeline phase."""

    kind = "Internal"


ERROR_KINDS: dict[str, type[McpxError]] = {
    cls.kind: cls
    for cls in (
        ConfigError,
        NotFound,
        DiscoveryEmpty,
        SchemaUnsupported,
        SchemaRefUnresolved,
        GenerationBusy,
        PolicyDenied,
        SandboxUnavailable,
        Timeout,
        Cancelled,
        ServerExited,
        TransportError,
        ToolError,
        McpxIOError,
        Internal,
    )
}


def exit_code_for(kind: str | None) -> int:
    """Map an error kind to the CLI exit status (0 when there is no error)."""
    if kind is None:
        return 0
    cls = ERROR_KINDS.get(kind)
    return cls.exit_code if cls is not None else 1
