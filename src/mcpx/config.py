"""
MCPX Configuration

Settings resolved from ``MCPX_*`` environment variables, plus loading and
saving of the server configuration file::

    {"mcpServers": {"<name>": {"command": "...", "args": [...], "env": {...}}}}
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from mcpx.exceptions import ConfigError, McpxIOError
from mcpx.logging import get_logger

logger = get_logger("mcpx.config")


class ServerConfig(BaseModel):
    """How to spawn one tool server."""

    command: str = Field(min_length=1)
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None
    cwd: str | None = None


class Settings(BaseModel):
    """Engine-wide defaults; every field maps to an ``MCPX_*`` variable."""

    tools_dir: Path = Path("templates/mcp-tools")
    output_root: Path = Path(".mcpx/generated")
    audit_log: Path | None = Path(".mcpx/audit.log")
    server_config: Path = Path(".mcp.json")
    timeout_ms: int = Field(default=30_000, ge=1, le=300_000)
    request_timeout_ms: int = Field(default=30_000, ge=1)
    max_tools: int = Field(default=5, ge=1)
    threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    max_units: int = Field(default=2000, ge=64)
    container_runtime: str | None = None
    python_image: str = "python:3.12-slim"
    ts_image: str = "oven/bun:1-alpine"
    orphan_max_age_s: float = Field(default=3600.0, ge=0.0)
    shutdown_grace_s: float = Field(default=2.0, ge=0.0)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build settings from the environment, raising ConfigError on bad values."""
        environ = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for field_name in cls.model_fields:
            raw = environ.get(f"MCPX_{field_name.upper()}")
            if raw is None:
                continue
            if field_name == "audit_log" and raw.strip().lower() in ("", "off", "none"):
                values[field_name] = None
            else:
                values[field_name] = raw
        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigError(f"Invalid MCPX_* environment: {exc.errors()[0]['msg']}") from exc


def load_server_config(path: str | Path) -> dict[str, ServerConfig]:
    """Load ``mcpServers`` from a configuration file.

    A missing file yields an empty mapping. Malformed JSON or entries
    raise ConfigError.
    """
    path = Path(path)
    if not path.exists():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"invalid JSON ({exc.msg} at line {exc.lineno})", path=str(path)) from exc
    except OSError as exc:
        raise McpxIOError(f"Cannot read {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError("top level must be an object", path=str(path))
    servers = raw.get("mcpServers", {})
    if not isinstance(servers, dict):
        raise ConfigError("'mcpServers' must be an object", path=str(path))

    result: dict[str, ServerConfig] = {}
    for name, entry in servers.items():
        if not isinstance(entry, dict):
            raise ConfigError(f"server '{name}' must be an object", path=str(path))
        try:
            result[name] = ServerConfig(**entry)
        except ValidationError as exc:
            raise ConfigError(f"server '{name}': {exc.errors()[0]['msg']}", path=str(path)) from exc
    return result


def save_server_config(path: str | Path, name: str, server: ServerConfig) -> None:
    """Insert or replace one server entry, preserving unrelated keys."""
    path = Path(path)
    data: dict = {}
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ConfigError(f"invalid JSON ({exc.msg})", path=str(path)) from exc
        if not isinstance(data, dict):
            raise ConfigError("top level must be an object", path=str(path))

    servers = data.setdefault("mcpServers", {})
    servers[name] = server.model_dump(exclude_none=True)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        os.replace(tmp, path)
    except OSError as exc:
        raise McpxIOError(f"Cannot write {path}: {exc}") from exc
    logger.info("Server registered", extra={"server": name})
