"""
MCPX Server Connection

One JSON-RPC 2.0 session with a tool server spoken over the child's
stdin/stdout as newline-delimited JSON. Stderr is kept in a bounded ring
buffer for the audit log.

Requests get increasing integer ids and are written in submission order;
responses are matched by id, so they may arrive in any order. A response
for an id that is no longer pending (timed out or cancelled) is logged
and dropped. Lines that do not parse as a JSON object are logged and
skipped.

State machine:
    INIT -> STARTING -> READY -> (CALLING <-> READY)* -> SHUTTING_DOWN -> CLOSED
    any non-terminal state -> CLOSED on crash
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from collections import deque
from contextlib import suppress
from typing import Any

from mcpx.config import ServerConfig
from mcpx.core.models import ConnectionState
from mcpx.exceptions import (
    Cancelled,
    McpxError,
    NotFound,
    ServerExited,
    Timeout,
    ToolError,
    TransportError,
)
from mcpx.logging import get_logger

logger = get_logger("mcpx.client")

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "mcpx", "version": "0.4.0"}
METHOD_NOT_FOUND = -32601
STREAM_LIMIT = 16 * 1024 * 1024


class ServerConnection:
    """Stdio JSON-RPC connection to one named tool server."""

    def __init__(
        self,
        name: str,
        config: ServerConfig,
        request_timeout_ms: int = 30_000,
        shutdown_grace_s: float = 2.0,
        stderr_lines: int = 200,
    ):
        self.name = name
        self.config = config
        self.request_timeout_ms = request_timeout_ms
        self.shutdown_grace_s = shutdown_grace_s

        self.state = ConnectionState.INIT
        self.next_request_id = 1
        self.pending: dict[int, asyncio.Future] = {}

        self._process: asyncio.subprocess.Process | None = None
        self._write_lock = asyncio.Lock()
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._stderr: deque[str] = deque(maxlen=stderr_lines)
        self._server_info: dict[str, Any] = {}

    # ─── Lifecycle ──────────────────────────────────────────

    @property
    def alive(self) -> bool:
        return (
            self.state in (ConnectionState.READY, ConnectionState.CALLING)
            and self._process is not None
            and self._process.returncode is None
        )

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def server_info(self) -> dict[str, Any]:
        return dict(self._server_info)

    async def start(self) -> None:
        """Spawn the server and run the ``initialize`` handshake."""
        if self.state != ConnectionState.INIT:
            raise TransportError(f"Connection '{self.name}' cannot be started from state {self.state.value}")
        self.state = ConnectionState.STARTING
        started = time.monotonic()

        env = dict(os.environ)
        if self.config.env:
            env.update(self.config.env)
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.config.command,
                *self.config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=self.config.cwd,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            self.state = ConnectionState.CLOSED
            raise TransportError(
                f"Cannot spawn tool server '{self.name}': {exc}",
                details={"server": self.name, "command": self.config.command},
            ) from exc

        self._reader_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())

        try:
            result = await self.request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": CLIENT_INFO,
                },
            )
            self._server_info = result.get("serverInfo", {}) if isinstance(result, dict) else {}
        except ToolError as exc:
            if exc.code != METHOD_NOT_FOUND:
                await self.close(wait=False)
                raise
        except (McpxError, asyncio.CancelledError):
            await self.close(wait=False)
            raise
        await self.notify("notifications/initialized")

        self.state = ConnectionState.READY
        logger.info(
            "Tool server ready",
            extra={"server": self.name, "duration_ms": int((time.monotonic() - started) * 1000)},
        )

    async def close(self, wait: bool = True) -> None:
        """Shut the server down.

        With ``wait`` the server gets a ``shutdown`` request and a grace
        period before it is killed; without it the shutdown is sent but not
        awaited. Pending waiters reject with Cancelled either way.
        """
        if self.state == ConnectionState.CLOSED and (self._process is None or self._process.returncode is not None):
            await self._stop_readers()
            return
        self.state = ConnectionState.SHUTTING_DOWN
        self.cancel_all(Cancelled(f"Connection to '{self.name}' closed"))

        process = self._process
        if process is not None and process.returncode is None:
            if wait:
                with suppress(McpxError):
                    await self.request("shutdown", None, timeout_ms=int(self.shutdown_grace_s * 1000) or 1)
            else:
                with suppress(McpxError):
                    await self._write({"jsonrpc": "2.0", "method": "shutdown"})
            if process.stdin is not None:
                process.stdin.close()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.shutdown_grace_s if wait else 0.05)
            except TimeoutError:
                with suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        await self._stop_readers()
        self.state = ConnectionState.CLOSED
        logger.info("Tool server closed", extra={"server": self.name})

    async def _stop_readers(self) -> None:
        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

    # ─── Requests ───────────────────────────────────────────

    async def _write(self, message: dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None or process.returncode is not None:
            raise TransportError(f"Tool server '{self.name}' is not running")
        data = json.dumps(message, separators=(",", ":")).encode("utf-8") + b"\n"
        try:
            process.stdin.write(data)
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise TransportError(f"Broken pipe to tool server '{self.name}'") from exc

    async def send(self, method: str, params: Any = None) -> tuple[int, asyncio.Future]:
        """Write one request and return its id and response future."""
        async with self._write_lock:
            request_id = self.next_request_id
            self.next_request_id += 1
            future = asyncio.get_running_loop().create_future()
            self.pending[request_id] = future
            message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
            if params is not None:
                message["params"] = params
            try:
                await self._write(message)
            except TransportError:
                self.pending.pop(request_id, None)
                raise
        logger.debug("Request sent", extra={"server": self.name, "request_id": request_id})
        return request_id, future

    async def notify(self, method: str, params: Any = None) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        async with self._write_lock:
            await self._write(message)

    async def request(self, method: str, params: Any = None, timeout_ms: int | None = None) -> Any:
        """Send a request and wait for its response.

        Raises Timeout after ``timeout_ms`` (the id is dropped from
        ``pending`` so a late reply is discarded), ToolError for a JSON-RPC
        error response, ServerExited if the server dies first.
        """
        timeout_ms = timeout_ms or self.request_timeout_ms
        request_id, future = await self.send(method, params)
        if self.state == ConnectionState.READY:
            self.state = ConnectionState.CALLING
        try:
            done, _ = await asyncio.wait({future}, timeout=timeout_ms / 1000)
        except asyncio.CancelledError:
            self.cancel(request_id, Cancelled("Request cancelled"))
            raise
        finally:
            if self.state == ConnectionState.CALLING and not self.pending:
                self.state = ConnectionState.READY

        if not done:
            self.pending.pop(request_id, None)
            future.cancel()
            logger.warning(
                "Request timed out",
                extra={"server": self.name, "request_id": request_id, "duration_ms": timeout_ms},
            )
            raise Timeout(
                f"Request {method} to '{self.name}' timed out after {timeout_ms} ms",
                timeout_ms=timeout_ms,
                details={"server": self.name, "request_id": request_id},
            )
        return future.result()

    def cancel(self, request_id: int, exc: Exception) -> bool:
        """Reject one pending waiter. Returns False if it was not pending."""
        future = self.pending.pop(request_id, None)
        if future is None or future.done():
            return False
        future.set_exception(exc)
        # Retrieved by whoever awaits; mark it so an abandoned future stays quiet.
        future.add_done_callback(_consume_exception)
        return True

    def cancel_all(self, exc: Exception) -> int:
        """Reject every pending waiter with ``exc``."""
        count = 0
        for request_id in list(self.pending):
            if self.cancel(request_id, exc):
                count += 1
        return count

    # ─── Tool methods ───────────────────────────────────────

    async def list_tools(self) -> list[dict[str, Any]]:
        tools: list[dict[str, Any]] = []
        cursor = None
        while True:
            result = await self.request("tools/list", {"cursor": cursor} if cursor else None)
            tools.extend(result.get("tools", []) if isinstance(result, dict) else [])
            cursor = result.get("nextCursor") if isinstance(result, dict) else None
            if not cursor:
                return tools

    async def get_tool(self, name: str) -> dict[str, Any]:
        """Fetch one tool schema, falling back to ``tools/list``."""
        try:
            result = await self.request("tools/get", {"name": name})
            if isinstance(result, dict):
                return result.get("tool", result)
        except ToolError as exc:
            if exc.code != METHOD_NOT_FOUND:
                raise
        for tool in await self.list_tools():
            if tool.get("name") == name:
                return tool
        raise NotFound(self.name, name)

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None, timeout_ms: int | None = None) -> Any:
        """Invoke ``tools/call`` and unwrap the result payload."""
        result = await self.request(
            "tools/call", {"name": name, "arguments": arguments or {}}, timeout_ms=timeout_ms
        )
        return unwrap_tool_result(result, self.name)

    def stderr_tail(self, lines: int = 20) -> list[str]:
        return list(self._stderr)[-lines:]

    # ─── Readers ────────────────────────────────────────────

    async def _read_stdout(self) -> None:
        process = self._process
        if process is None or process.stdout is None:
            raise TransportError(f"Tool server '{self.name}' stdout is not connected")
        while True:
            try:
                line = await process.stdout.readline()
            except ValueError:
                logger.warning("Dropped oversized line", extra={"server": self.name})
                continue
            if not line:
                break
            if not line.strip():
                continue
            try:
                message = json.loads(line.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                logger.warning("Skipped malformed line", extra={"server": self.name})
                continue
            if not isinstance(message, dict):
                logger.warning("Skipped non-object message", extra={"server": self.name})
                continue
            await self._dispatch(message)

        await process.wait()
        if self.state not in (ConnectionState.SHUTTING_DOWN, ConnectionState.CLOSED):
            self._crashed(process.returncode)

    async def _dispatch(self, message: dict[str, Any]) -> None:
        if "method" in message:
            if "id" in message:
                with suppress(TransportError):
                    async with self._write_lock:
                        await self._write({
                            "jsonrpc": "2.0",
                            "id": message["id"],
                            "error": {"code": METHOD_NOT_FOUND, "message": "Method not found"},
                        })
            else:
                logger.debug("Notification received", extra={"server": self.name})
            return

        request_id = message.get("id")
        future = self.pending.pop(request_id, None) if isinstance(request_id, int) else None
        if future is None:
            logger.warning(
                "Discarded response for unknown or expired id",
                extra={"server": self.name, "request_id": request_id},
            )
            return
        if future.done():
            return
        if "error" in message:
            error = message["error"] if isinstance(message["error"], dict) else {}
            future.set_exception(
                ToolError(
                    int(error.get("code", -32603)),
                    str(error.get("message", "Unknown error")),
                    data=error.get("data"),
                    server=self.name,
                )
            )
        else:
            future.set_result(message.get("result"))

    async def _read_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            raise TransportError(f"Tool server '{self.name}' stderr is not connected")
        while True:
            try:
                line = await process.stderr.readline()
            except ValueError:
                continue
            if not line:
                break
            self._stderr.append(line.decode("utf-8", errors="replace").rstrip("\n"))

    def _crashed(self, returncode: int | None) -> None:
        self.state = ConnectionState.CLOSED
        rejected = self.cancel_all(
            ServerExited(self.name, returncode, details={"stderr_tail": self.stderr_tail(5)})
        )
        logger.warning(
            f"Tool server exited unexpectedly (returncode={returncode}, {rejected} pending rejected)",
            extra={"server": self.name},
        )


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


def unwrap_tool_result(result: Any, server: str | None = None) -> Any:
    """Extract the value from an MCP ``tools/call`` result.

    ``structuredContent`` wins; otherwise text content is joined and parsed
    as JSON when possible. ``isError`` results raise ToolError.
    """
    if not isinstance(result, dict):
        return result
    content = result.get("content")
    text = None
    if isinstance(content, list):
        parts = [c.get("text", "") for c in content if isinstance(c, dict) and c.get("type") == "text"]
        if parts:
            text = "".join(parts)
    if result.get("isError"):
        raise ToolError(-32000, text or "Tool reported an error", data=result.get("structuredContent"), server=server)
    if "structuredContent" in result:
        return result["structuredContent"]
    if text is not None:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
    if content is None:
        return result
    return content
