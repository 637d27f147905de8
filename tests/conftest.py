"""Shared test fixtures for the MCPX test suite."""

import json
import sys
from pathlib import Path

import pytest
import pytest_asyncio

from mcpx.audit.trail import AuditTrail
from mcpx.client.pool import ServerPool
from mcpx.config import ServerConfig, Settings
from mcpx.core.models import ToolDescriptor
from mcpx.discovery.index import ToolIndex
from mcpx.engine.orchestrator import Orchestrator

STUB_SERVER = Path(__file__).parent / "stub_tool_server.py"

# Parameter-list metadata mirroring the tools of the stub server.
FS_TOOLS = [
    {
        "name": "read_file",
        "description": "Read the file at the given path and return its content",
        "category": "filesystem",
        "keywords": ["read", "file", "open"],
        "parameters": [
            {"name": "path", "type": "string", "description": "Absolute file path", "required": True},
        ],
        "returns": {
            "type": "object",
            "properties": {"content": {"type": "string"}},
            "required": ["content"],
        },
    },
    {
        "name": "slow_echo",
        "description": "Echo text back after a delay",
        "parameters": [
            {"name": "delay_ms", "type": "integer", "required": True},
            {"name": "text", "type": "string", "required": False},
        ],
    },
    {
        "name": "get_contact",
        "description": "Look up the contact record of a customer",
        "parameters": [{"name": "name", "type": "string", "required": False}],
    },
    {
        "name": "list_records",
        "description": "List stored records",
        "parameters": [{"name": "count", "type": "integer", "required": False}],
    },
    {
        "name": "fail_tool",
        "description": "Always fails",
        "parameters": [],
    },
    {
        "name": "crash",
        "description": "Terminates the server",
        "parameters": [],
    },
]


def stub_config(*flags: str) -> ServerConfig:
    """Server config that runs the scripted stub server with ``flags``."""
    return ServerConfig(command=sys.executable, args=[str(STUB_SERVER), *flags])


@pytest.fixture
def stub():
    """Factory for stub server configs: ``stub("--malformed")``."""
    return stub_config


@pytest.fixture
def tools_dir(tmp_path):
    """Tools directory holding ``fs/fs-tools.json``."""
    root = tmp_path / "tools"
    (root / "fs").mkdir(parents=True)
    (root / "fs" / "fs-tools.json").write_text(json.dumps(FS_TOOLS, indent=2))
    return root


@pytest.fixture
def index(tools_dir):
    idx = ToolIndex()
    idx.load(tools_dir)
    return idx


@pytest.fixture
def read_file_tool():
    return ToolDescriptor(
        name="read_file",
        server="fs",
        description="Read the file at the given path and return its content",
        input_schema={
            "type": "object",
            "properties": {"path": {"type": "string", "description": "Absolute file path"}},
            "required": ["path"],
        },
        output_schema={
            "type": "object",
            "properties": {"content": {"type": "string"}},
            "required": ["content"],
        },
    )


@pytest.fixture
def settings(tmp_path, tools_dir):
    """Settings pointing every path into ``tmp_path``."""
    server_config = tmp_path / ".mcp.json"
    server_config.write_text(json.dumps({
        "mcpServers": {"fs": stub_config().model_dump(exclude_none=True)},
    }))
    return Settings(
        tools_dir=tools_dir,
        output_root=tmp_path / "generated",
        audit_log=tmp_path / "audit.log",
        server_config=server_config,
        timeout_ms=15_000,
        request_timeout_ms=10_000,
        shutdown_grace_s=0.5,
    )


@pytest_asyncio.fixture
async def pool():
    """Pool with the stub registered as ``fs``; closed after the test."""
    p = ServerPool({"fs": stub_config()}, request_timeout_ms=5_000, shutdown_grace_s=0.5)
    yield p
    await p.disconnect_all()


@pytest_asyncio.fixture
async def orchestrator(settings, index):
    """Orchestrator over the stub server with a file-backed audit trail."""
    pool = ServerPool(
        {"fs": stub_config()},
        request_timeout_ms=settings.request_timeout_ms,
        shutdown_grace_s=settings.shutdown_grace_s,
    )
    engine = Orchestrator(
        index=index,
        pool=pool,
        settings=settings,
        audit=AuditTrail(settings.audit_log),
    )
    yield engine
    await engine.close()
