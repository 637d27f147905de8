"""
MCPX Server Pool

Owns the ServerConnection for each configured tool server. Connections open
lazily on first use; a dead connection is re-spawned on the next call.
Spawning retries once with a short backoff. Tool calls themselves are not
retried unless ``retries`` is configured, since they are not assumed to be
idempotent.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from typing import Any

from mcpx.client.connection import ServerConnection
from mcpx.config import ServerConfig
from mcpx.exceptions import ConfigError, ServerExited, TransportError
from mcpx.logging import get_logger

logger = get_logger("mcpx.client")

SPAWN_BACKOFF_S = 0.25


class ServerPool:
    """Named tool-server connections shared by the orchestrator."""

    def __init__(
        self,
        servers: Mapping[str, ServerConfig] | None = None,
        request_timeout_ms: int = 30_000,
        shutdown_grace_s: float = 2.0,
        retries: int = 0,
    ):
        self._configs: dict[str, ServerConfig] = dict(servers or {})
        self._connections: dict[str, ServerConnection] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.request_timeout_ms = request_timeout_ms
        self.shutdown_grace_s = shutdown_grace_s
        self.retries = retries

    @property
    def servers(self) -> list[str]:
        return sorted(self._configs)

    def connection(self, name: str) -> ServerConnection | None:
        return self._connections.get(name)

    def register(self, name: str, config: ServerConfig) -> None:
        """Record a server without spawning it."""
        self._configs[name] = config

    async def add_server(
        self,
        name: str,
        command: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
    ) -> ServerConnection:
        """Register a server and spawn it now."""
        self.register(name, ServerConfig(command=command, args=list(args), env=dict(env) if env else None))
        return await self.get(name)

    async def get(self, name: str) -> ServerConnection:
        """Return a live connection, spawning (or re-spawning) it if needed."""
        if name not in self._configs:
            raise ConfigError(f"Unknown tool server '{name}'", details={"server": name})
        lock = self._locks.setdefault(name, asyncio.Lock())
        async with lock:
            conn = self._connections.get(name)
            if conn is not None and conn.alive:
                return conn
            if conn is not None:
                await conn.close(wait=False)

            for attempt in (1, 2):
                conn = ServerConnection(
                    name,
                    self._configs[name],
                    request_timeout_ms=self.request_timeout_ms,
                    shutdown_grace_s=self.shutdown_grace_s,
                )
                try:
                    await conn.start()
                except (TransportError, ServerExited) as exc:
                    if attempt == 2:
                        raise
                    logger.warning(
                        f"Spawn failed, retrying: {exc.message}",
                        extra={"server": name},
                    )
                    await asyncio.sleep(SPAWN_BACKOFF_S)
                    continue
                self._connections[name] = conn
                return conn
        raise TransportError(f"Cannot start tool server '{name}'")

    async def call_tool(
        self,
        server: str,
        tool: str,
        arguments: dict[str, Any] | None = None,
        timeout_ms: int | None = None,
        retries: int | None = None,
    ) -> Any:
        retries = self.retries if retries is None else retries
        attempts = 1 + retries
        for attempt in range(1, attempts + 1):
            conn = await self.get(server)
            try:
                return await conn.call_tool(tool, arguments, timeout_ms=timeout_ms)
            except (ServerExited, TransportError) as exc:
                if attempt == attempts:
                    raise
                logger.warning(
                    f"Tool call failed ({exc.kind}), retrying {attempt}/{retries}",
                    extra={"server": server, "tool": tool},
                )
        raise TransportError(f"Tool call {server}.{tool} failed")

    async def list_tools(self, server: str) -> list[dict[str, Any]]:
        conn = await self.get(server)
        return await conn.list_tools()

    def cancel_pending(self, exc: Exception) -> int:
        """Reject every pending waiter on every connection."""
        return sum(conn.cancel_all(exc) for conn in self._connections.values())

    def stderr_tail(self, name: str, lines: int = 20) -> list[str]:
        conn = self._connections.get(name)
        return conn.stderr_tail(lines) if conn is not None else []

    async def disconnect(self, name: str, wait: bool = True) -> None:
        conn = self._connections.pop(name, None)
        if conn is not None:
            await conn.close(wait=wait)

    async def disconnect_all(self, wait: bool = True) -> None:
        names = list(self._connections)
        await asyncio.gather(*(self.disconnect(n, wait=wait) for n in names))

    async def __aenter__(self) -> ServerPool:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect_all()
