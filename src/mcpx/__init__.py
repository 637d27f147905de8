"""
MCPX: MCP Code-Execution Engine

Turns a natural-language intent into a small program that calls MCP tool
servers, runs it in a sandbox, and returns a bounded, redacted summary.

Usage:
    from mcpx import Orchestrator

    async with Orchestrator.from_settings() as engine:
        result = await engine.execute(
            "read the file /data/notes.txt",
            language="python",
            options={"timeout_ms": 5000},
        )
    print(result.summary)

    # One-shot helper with settings taken from MCPX_* variables:
    result = await mcpx.execute("read the file /data/notes.txt")
"""

from __future__ import annotations

__version__ = "0.4.0"

from typing import Any

from mcpx.audit.trail import AuditTrail
from mcpx.client.pool import ServerPool
from mcpx.codegen.generator import WrapperGenerator
from mcpx.config import ServerConfig, Settings
from mcpx.core.models import (
    ExecuteOptions,
    ExecutionContext,
    ExecutionResult,
    IsolationLevel,
    Language,
    NetworkPolicy,
    PiiConfig,
    RedactOptions,
    ResourceLimits,
    ToolDescriptor,
)
from mcpx.discovery.index import ToolIndex
from mcpx.engine.orchestrator import Orchestrator
from mcpx.engine.summarizer import Summarizer
from mcpx.exceptions import McpxError
from mcpx.sandbox.runtime import SandboxRuntime
from mcpx.security.pii import PiiTokenizer
from mcpx.security.validator import CodeValidator

__all__ = [
    # Main API
    "Orchestrator",
    "execute",
    "__version__",
    # Components
    "AuditTrail",
    "CodeValidator",
    "PiiTokenizer",
    "SandboxRuntime",
    "ServerPool",
    "Summarizer",
    "ToolIndex",
    "WrapperGenerator",
    # Models
    "ExecuteOptions",
    "ExecutionContext",
    "ExecutionResult",
    "IsolationLevel",
    "Language",
    "NetworkPolicy",
    "PiiConfig",
    "RedactOptions",
    "ResourceLimits",
    "ToolDescriptor",
    # Configuration
    "ServerConfig",
    "Settings",
    # Errors
    "McpxError",
]


async def execute(
    intent: str,
    language: Language | str = Language.TYPESCRIPT,
    options: ExecuteOptions | dict[str, Any] | None = None,
    settings: Settings | None = None,
) -> ExecutionResult:
    """Run one intent with a throwaway orchestrator and shut its servers down."""
    async with Orchestrator.from_settings(settings) as engine:
        return await engine.execute(intent, language, options)
