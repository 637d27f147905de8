"""
MCPX Sandbox Runtime

Runs a GeneratedUnit at the isolation level of its ExecutionContext:

1. create a private workdir and write the unit plus preamble into it
2. spawn the level's process and start the wall clock once it is running
3. pump the protocol stream, serving dispatcher calls through the ToolBridge
4. on timeout or cancellation kill the sandbox and cancel in-flight calls
5. on every path reap the child, release level resources, remove the workdir

Level selection maps risk to the minimum safe level (low -> process,
medium -> vm, high -> container). A requested level that is unavailable
raises SandboxUnavailable; levels are never downgraded.
"""

from __future__ import annotations

import asyncio
import shutil
import tempfile
import time
from contextlib import suppress
from pathlib import Path

from mcpx.config import Settings
from mcpx.core.models import (
    ExecutionContext,
    ExecutionMetrics,
    GeneratedUnit,
    IsolationLevel,
    Language,
    RiskLevel,
    SandboxOutcome,
)
from mcpx.exceptions import (
    ERROR_KINDS,
    Internal,
    McpxError,
    PolicyDenied,
    SandboxUnavailable,
    Timeout,
)
from mcpx.logging import get_logger
from mcpx.sandbox.bridge import SandboxChannel, ToolBridge
from mcpx.sandbox.container import ContainerSandbox
from mcpx.sandbox.preamble import write_unit
from mcpx.sandbox.process import LaunchSpec, ProcessSandbox
from mcpx.sandbox.vm import VmSandbox

logger = get_logger("mcpx.sandbox")

STREAM_LIMIT = 16 * 1024 * 1024
MEMORY_POLL_S = 0.02

RISK_TO_LEVEL = {
    RiskLevel.LOW: IsolationLevel.PROCESS,
    RiskLevel.MEDIUM: IsolationLevel.VM,
    RiskLevel.HIGH: IsolationLevel.CONTAINER,
}

_LEVEL_ORDER = [IsolationLevel.PROCESS, IsolationLevel.VM, IsolationLevel.CONTAINER]


def _tail(text: str, limit: int = 2000) -> str:
    return text[-limit:]


class SandboxRuntime:
    """Dispatches units to the process, vm or container backend."""

    def __init__(
        self,
        settings: Settings | None = None,
        backends: dict[IsolationLevel, ProcessSandbox] | None = None,
    ):
        self.settings = settings or Settings()
        self._backends = backends or {
            IsolationLevel.PROCESS: ProcessSandbox(self.settings),
            IsolationLevel.VM: VmSandbox(self.settings),
            IsolationLevel.CONTAINER: ContainerSandbox(self.settings),
        }

    def backend(self, level: IsolationLevel) -> ProcessSandbox:
        try:
            return self._backends[IsolationLevel(level)]
        except KeyError:
            raise SandboxUnavailable(str(level), "no backend configured") from None

    async def available(self, level: IsolationLevel, language: Language) -> bool:
        try:
            await self.backend(level).check(language)
        except SandboxUnavailable:
            return False
        return True

    async def select_level(
        self,
        risk_level: RiskLevel,
        language: Language,
        requested: IsolationLevel | None = None,
    ) -> IsolationLevel:
        """Resolve the isolation level for a validated unit."""
        required = RISK_TO_LEVEL.get(risk_level, IsolationLevel.CONTAINER)
        if language is Language.TYPESCRIPT and required is IsolationLevel.VM:
            required = IsolationLevel.CONTAINER

        if requested is not None:
            requested = IsolationLevel(requested)
            if _LEVEL_ORDER.index(requested) < _LEVEL_ORDER.index(required):
                logger.warning(
                    f"Pinned level '{requested.value}' is below the '{required.value}' suggested for this risk",
                    extra={"isolation_level": requested.value, "risk_level": risk_level.value},
                )
            level = requested
        else:
            level = required

        await self.backend(level).check(language)
        return level

    async def run(
        self,
        unit: GeneratedUnit,
        context: ExecutionContext,
        bridge: ToolBridge,
    ) -> SandboxOutcome:
        """Execute ``unit`` and return its outcome.

        Raises Timeout when the wall clock expires, the tool-side error
        (ToolError, ServerExited, ...) when the unit failed because of one,
        and Internal for any other failure inside the sandbox.
        """
        level = context.isolation_level
        backend = self.backend(level)
        await backend.check(unit.language)

        limits = context.resource_limits
        workdir = Path(tempfile.mkdtemp(prefix="mcpx-"))
        spec: LaunchSpec | None = None
        process: asyncio.subprocess.Process | None = None
        channel: SandboxChannel | None = None
        peak = [0]
        started = time.monotonic()

        try:
            launcher = write_unit(unit, workdir, level)
            spec = backend.launch_spec(unit.language, launcher, workdir, context)
            try:
                process = await asyncio.create_subprocess_exec(
                    *spec.argv,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=spec.env,
                    cwd=str(spec.cwd),
                    preexec_fn=spec.preexec,
                    start_new_session=True,
                    limit=STREAM_LIMIT,
                )
            except OSError as exc:
                raise SandboxUnavailable(level.value, f"cannot start sandbox: {exc}") from exc

            started = time.monotonic()
            logger.info(
                "Sandbox started",
                extra={"isolation_level": level.value},
            )
            channel = SandboxChannel(process, bridge)
            probe = (
                asyncio.create_task(self._track_memory(process, peak))
                if backend.measures_memory
                else None
            )
            try:
                returncode = await asyncio.wait_for(channel.run(), timeout=limits.wall_clock_ms / 1000)
            except TimeoutError:
                await backend.terminate(process.pid, spec)
                cancelled = bridge.cancel_all()
                await bridge.drain()
                logger.warning(
                    f"Sandbox timed out, {cancelled} in-flight call(s) cancelled",
                    extra={"isolation_level": level.value, "duration_ms": limits.wall_clock_ms},
                )
                raise Timeout(
                    f"Execution exceeded the wall clock of {limits.wall_clock_ms} ms",
                    timeout_ms=limits.wall_clock_ms,
                    details={"cancelled_calls": cancelled, "isolation_level": level.value},
                ) from None
            except asyncio.CancelledError:
                await backend.terminate(process.pid, spec)
                bridge.cancel_all()
                await bridge.drain()
                raise
            finally:
                if probe is not None:
                    probe.cancel()
                    with suppress(asyncio.CancelledError):
                        await probe

            metrics = ExecutionMetrics(
                wall_ms=int((time.monotonic() - started) * 1000),
                memory_peak_bytes=peak[0],
                exit_status=returncode,
                tool_calls=bridge.tool_calls,
            )
            return self._outcome(channel, bridge, metrics)
        finally:
            if process is not None and process.returncode is None:
                with suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
            if channel is not None:
                await channel.close()
            if bridge.inflight:
                bridge.cancel_all()
                await bridge.drain()
            if spec is not None:
                await backend.cleanup(spec)
            shutil.rmtree(workdir, ignore_errors=True)
            if workdir.exists():
                logger.error(f"Sandbox workdir {workdir} could not be removed")

    @staticmethod
    def _outcome(channel: SandboxChannel, bridge: ToolBridge, metrics: ExecutionMetrics) -> SandboxOutcome:
        details = {"exit_status": metrics.exit_status, "stderr_tail": _tail(channel.stderr)}
        if channel.error is not None:
            kind = str(channel.error.get("kind") or "Internal")
            message = str(channel.error.get("message") or "unknown error")
            last = bridge.last_error
            if last is not None and last.kind == kind:
                raise last
            if kind == PolicyDenied.kind:
                raise PolicyDenied(message, details=details)
            error_cls = ERROR_KINDS.get(kind)
            if error_cls is not None and error_cls is not Internal and _simple_init(error_cls):
                raise error_cls(message, details=details)
            raise Internal(f"Sandboxed code failed: {message}", details=details)

        if not channel.has_value:
            raise Internal(
                f"Sandbox exited with status {metrics.exit_status} without a result",
                details=details,
            )
        return SandboxOutcome(
            value=channel.value,
            has_value=True,
            stdout=channel.stdout,
            stderr=channel.stderr,
            metrics=metrics,
        )

    @staticmethod
    async def _track_memory(process: asyncio.subprocess.Process, peak: list[int]) -> None:
        """Poll the peak resident set size (VmHWM) until the process exits."""
        status_path = Path(f"/proc/{process.pid}/status")
        while process.returncode is None:
            try:
                text = status_path.read_text()
            except OSError:
                return
            for line in text.splitlines():
                if line.startswith("VmHWM:"):
                    peak[0] = max(peak[0], int(line.split()[1]) * 1024)
                    break
            await asyncio.sleep(MEMORY_POLL_S)


def _simple_init(error_cls: type[McpxError]) -> bool:
    return error_cls.__init__ is McpxError.__init__
