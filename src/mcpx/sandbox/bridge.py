"""
MCPX Sandbox Bridge

Host side of the dispatcher protocol (see ``mcpx.sandbox.preamble``).

- SandboxChannel pumps one sandbox's stdout: it collects console output and
  the final result, and hands ``rpc_request`` messages to the bridge.
- ToolBridge serves those requests: tool calls go to the ServerPool, but
  only for the tools selected for this execution; ``fetch`` is answered
  through httpx only for hosts the network policy allows. Each request
  runs in its own task so the sandbox may have several calls in flight.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable, Iterable
from contextlib import suppress
from typing import Any

import httpx

from mcpx.core.models import NetworkPolicy, ToolDescriptor
from mcpx.exceptions import Cancelled, Internal, McpxError, PolicyDenied, ToolError, TransportError
from mcpx.logging import get_logger
from mcpx.security.pii import PiiTokenizer

logger = get_logger("mcpx.sandbox")

MAX_CONSOLE_CHARS = 64 * 1024
FETCH_MAX_BYTES = 1024 * 1024

Reply = Callable[[int, dict[str, Any]], Awaitable[None]]


class ToolBridge:
    """Serves dispatcher requests for one sandbox run."""

    def __init__(
        self,
        pool: Any,
        tools: Iterable[ToolDescriptor],
        network: NetworkPolicy | None = None,
        tokenizer: PiiTokenizer | None = None,
        detokenize_args: bool = False,
        request_timeout_ms: int | None = None,
        retries: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._pool = pool
        self._tools = {d.fqn: d for d in tools}
        self._network = network or NetworkPolicy()
        self._tokenizer = tokenizer
        self._detokenize_args = detokenize_args
        self._request_timeout_ms = request_timeout_ms
        self._retries = retries
        self._transport = transport
        self._inflight: set[asyncio.Task] = set()

        self.tool_calls = 0
        self.cancelled_calls = 0
        self.last_error: McpxError | None = None

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def submit(self, request_id: int, payload: Any, reply: Reply) -> asyncio.Task:
        """Serve one request in the background and send the reply when done."""

        async def _serve() -> None:
            response = await self.handle(payload)
            await reply(request_id, response)

        task = asyncio.create_task(_serve())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def handle(self, payload: Any) -> dict[str, Any]:
        """Answer one dispatcher request; errors become a failed reply."""
        payload = payload if isinstance(payload, dict) else {}
        method = payload.get("method")
        try:
            if method == "call":
                value = await self.call(str(payload.get("tool", "")), payload.get("args") or {})
            elif method == "fetch":
                value = await self.fetch(str(payload.get("url", "")))
            else:
                raise ToolError(-32601, f"Unknown dispatcher method '{method}'")
        except McpxError as exc:
            self.last_error = exc
            return {
                "success": False,
                "error": exc.message,
                "kind": exc.kind,
                "code": getattr(exc, "code", None),
            }
        except Exception as exc:
            logger.error("Dispatcher request failed", exc_info=True)
            self.last_error = Internal(f"{type(exc).__name__}: {exc}")
            return {"success": False, "error": self.last_error.message, "kind": "Internal", "code": None}
        return {"success": True, "payload": value}

    async def call(self, fqn: str, args: dict[str, Any]) -> Any:
        descriptor = self._tools.get(fqn)
        if descriptor is None:
            raise PolicyDenied(f"Tool '{fqn}' was not selected for this execution")
        if self._tokenizer is not None and self._detokenize_args:
            args = self._tokenizer.detokenize_value(args)
        self.tool_calls += 1
        logger.debug("Dispatching tool call", extra={"server": descriptor.server, "tool": descriptor.name})
        value = await self._pool.call_tool(
            descriptor.server,
            descriptor.name,
            args,
            timeout_ms=self._request_timeout_ms,
            retries=self._retries,
        )
        if self._tokenizer is not None and self._detokenize_args:
            value = self._tokenizer.tokenize_value(value)
        return value

    async def fetch(self, url: str) -> dict[str, Any]:
        try:
            parsed = httpx.URL(url)
        except httpx.InvalidURL as exc:
            raise PolicyDenied(f"Invalid URL: {url}") from exc
        host = parsed.host or ""
        if parsed.scheme not in ("http", "https") or not self._network.permits(host):
            raise PolicyDenied(f"Network access to '{host or url}' is not permitted")

        timeout = (self._request_timeout_ms or 30_000) / 1000
        try:
            async with httpx.AsyncClient(
                timeout=timeout, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            raise TransportError(f"Fetch of {host} failed: {exc}") from exc
        text = response.text[:FETCH_MAX_BYTES]
        if self._tokenizer is not None and self._detokenize_args:
            text = self._tokenizer.tokenize(text)
        return {
            "status": response.status_code,
            "headers": dict(response.headers),
            "text": text,
        }

    def cancel_all(self) -> int:
        """Cancel every in-flight request; their tool-server waiters reject with Cancelled."""
        count = 0
        for task in list(self._inflight):
            if not task.done():
                task.cancel()
                count += 1
        self.cancelled_calls += count
        if count:
            self.last_error = Cancelled(f"{count} in-flight tool call(s) cancelled by sandbox teardown")
        return count

    async def drain(self) -> None:
        """Wait for cancelled requests to finish unwinding."""
        tasks = list(self._inflight)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class SandboxChannel:
    """Reads one sandbox's protocol stream and writes replies to its stdin."""

    def __init__(self, process: asyncio.subprocess.Process, bridge: ToolBridge):
        self._process = process
        self._bridge = bridge
        self._write_lock = asyncio.Lock()
        self._stdout: list[str] = []
        self._stderr: list[str] = []
        self._stdout_size = 0
        self._stderr_size = 0

        self.value: Any = None
        self.has_value = False
        self.error: dict[str, Any] | None = None

    @property
    def stdout(self) -> str:
        return "".join(self._stdout)

    @property
    def stderr(self) -> str:
        return "".join(self._stderr)

    def _append(self, stream: str, text: str) -> None:
        if stream == "stdout":
            if self._stdout_size < MAX_CONSOLE_CHARS:
                self._stdout.append(text[: MAX_CONSOLE_CHARS - self._stdout_size])
                self._stdout_size += len(text)
        elif self._stderr_size < MAX_CONSOLE_CHARS:
            self._stderr.append(text[: MAX_CONSOLE_CHARS - self._stderr_size])
            self._stderr_size += len(text)

    async def run(self) -> int:
        """Pump both streams until the sandbox exits; return its status."""
        await asyncio.gather(self._pump_stdout(), self._pump_stderr())
        return await self._process.wait()

    async def _pump_stdout(self) -> None:
        stream = self._process.stdout
        if stream is None:
            raise Internal("Sandbox stdout is not a pipe")
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                self._append("stderr", "[mcpx] dropped an oversized sandbox message\n")
                continue
            if not line:
                break
            try:
                message = json.loads(line.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                self._append("stdout", line.decode("utf-8", errors="replace"))
                continue
            if not isinstance(message, dict):
                self._append("stdout", line.decode("utf-8", errors="replace"))
                continue
            self._on_message(message)

    def _on_message(self, message: dict[str, Any]) -> None:
        kind = message.get("type")
        if kind in ("stdout", "stderr"):
            self._append(kind, str(message.get("data", "")))
        elif kind == "rpc_request":
            request_id = message.get("id")
            if isinstance(request_id, int):
                self._bridge.submit(request_id, message.get("payload"), self._reply)
        elif kind == "result":
            self.value = message.get("value")
            self.has_value = True
        elif kind == "error":
            self.error = message
        else:
            self._append("stderr", json.dumps(message, separators=(",", ":")) + "\n")

    async def _pump_stderr(self) -> None:
        stream = self._process.stderr
        if stream is None:
            raise Internal("Sandbox stderr is not a pipe")
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            self._append("stderr", chunk.decode("utf-8", errors="replace"))

    async def _reply(self, request_id: int, response: dict[str, Any]) -> None:
        message = {"type": "rpc_response", "id": request_id, **response}
        data = json.dumps(message, separators=(",", ":"), default=str).encode("utf-8") + b"\n"
        stdin = self._process.stdin
        if stdin is None or self._process.returncode is not None:
            return
        async with self._write_lock:
            try:
                stdin.write(data)
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("Sandbox exited before the reply was delivered")

    async def close(self) -> None:
        stdin = self._process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()
            with suppress(BrokenPipeError, ConnectionResetError):
                await stdin.wait_closed()
