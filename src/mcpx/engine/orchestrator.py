"""
MCPX Orchestrator

Single entrypoint ``execute(intent, language, options)``. Every call walks
the same phases and appends one audit record per phase it reaches:

    DISCOVERY -> GENERATION -> REDACTION_PRE -> VALIDATION
    -> SANDBOX_SELECTION -> EXECUTION -> SUMMARIZATION -> REDACTION_POST

Failures never escape ``execute``: they become an ExecutionResult with
``success=False``, the error kind, and a summary scrubbed of every value in
the redaction table. ``execute_or_raise`` re-raises instead.

Cancellation is checked between phases; inside the sandbox it kills the
unit and rejects its in-flight tool calls with Cancelled.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from mcpx.audit.anomaly import AnomalyDetector, Observation
from mcpx.audit.trail import AuditTrail
from mcpx.client.pool import ServerPool
from mcpx.codegen.entry import EntryBuilder, split_snippet
from mcpx.codegen.generator import WrapperGenerator, estimate_tokens
from mcpx.config import Settings, load_server_config
from mcpx.core.models import (
    AuditRecord,
    ExecuteOptions,
    ExecutionContext,
    ExecutionMetrics,
    ExecutionResult,
    Language,
    Phase,
    ResourceLimits,
)
from mcpx.discovery.index import ToolIndex
from mcpx.engine.summarizer import Summarizer, serialize
from mcpx.exceptions import (
    Cancelled,
    DiscoveryEmpty,
    Internal,
    McpxError,
    PolicyDenied,
)
from mcpx.logging import get_logger
from mcpx.sandbox.bridge import ToolBridge
from mcpx.sandbox.process import check_env_allowlist
from mcpx.sandbox.runtime import SandboxRuntime
from mcpx.security.pii import PiiTokenizer
from mcpx.security.validator import CodeValidator

logger = get_logger("mcpx.engine")

SUMMARY_ERROR_LIMIT = 500


@dataclass
class _Run:
    """Mutable state of one ``execute`` call."""

    execution_id: str
    tokenizer: PiiTokenizer
    started: float = field(default_factory=time.monotonic)
    execution_started: float | None = None
    tools: list[str] = field(default_factory=list)
    servers: list[str] = field(default_factory=list)
    risk_score: int | None = None
    bridge: ToolBridge | None = None
    result: ExecutionResult | None = None
    error: McpxError | None = None

    def outcome(self) -> ExecutionResult:
        if self.result is None:
            raise Internal(f"Execution {self.execution_id} finished without a result")
        return self.result


class Orchestrator:
    """Runs the discovery -> generation -> validation -> sandbox pipeline."""

    def __init__(
        self,
        index: ToolIndex | None = None,
        pool: ServerPool | None = None,
        settings: Settings | None = None,
        audit: AuditTrail | None = None,
        runtime: SandboxRuntime | None = None,
        generator: WrapperGenerator | None = None,
    ):
        self.settings = settings or Settings()
        self.index = index if index is not None else ToolIndex()
        self.pool = pool if pool is not None else ServerPool(
            request_timeout_ms=self.settings.request_timeout_ms,
            shutdown_grace_s=self.settings.shutdown_grace_s,
        )
        self.audit = audit
        self.runtime = runtime or SandboxRuntime(self.settings)
        self.generator = generator or WrapperGenerator()
        self.anomalies = AnomalyDetector()
        self.entry_builder = EntryBuilder(self.generator)
        self._index_loaded = len(self.index) > 0
        self._index_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> Orchestrator:
        """Build an orchestrator wired from ``MCPX_*`` settings and the server config file."""
        settings = settings or Settings.from_env()
        pool = ServerPool(
            load_server_config(settings.server_config),
            request_timeout_ms=settings.request_timeout_ms,
            shutdown_grace_s=settings.shutdown_grace_s,
        )
        audit = AuditTrail(settings.audit_log) if settings.audit_log else None
        return cls(pool=pool, settings=settings, audit=audit)

    def default_options(self, **overrides: Any) -> ExecuteOptions:
        values: dict[str, Any] = {
            "max_tools": self.settings.max_tools,
            "threshold": self.settings.threshold,
            "timeout_ms": self.settings.timeout_ms,
            "request_timeout_ms": self.settings.request_timeout_ms,
            "max_units": self.settings.max_units,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return ExecuteOptions(**values)

    async def close(self) -> None:
        await self.pool.disconnect_all()

    async def __aenter__(self) -> Orchestrator:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ─── Entry points ───────────────────────────────────────

    async def execute(
        self,
        intent: str,
        language: Language | str = Language.TYPESCRIPT,
        options: ExecuteOptions | dict[str, Any] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ExecutionResult:
        """Run the full pipeline for ``intent`` and return its result."""
        run = await self._execute(intent, language, options, cancel)
        return run.outcome()

    async def execute_or_raise(
        self,
        intent: str,
        language: Language | str = Language.TYPESCRIPT,
        options: ExecuteOptions | dict[str, Any] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ExecutionResult:
        """Like ``execute`` but raises the McpxError of a failed run."""
        run = await self._execute(intent, language, options, cancel)
        if run.error is not None:
            raise run.error
        return run.outcome()

    async def _execute(
        self,
        intent: str,
        language: Language | str,
        options: ExecuteOptions | dict[str, Any] | None,
        cancel: asyncio.Event | None,
    ) -> _Run:
        if options is None:
            options = self.default_options()
        elif isinstance(options, dict):
            options = self.default_options(**options)

        run = _Run(execution_id=uuid.uuid4().hex[:12], tokenizer=PiiTokenizer(options.pii))
        pipeline = asyncio.create_task(self._pipeline(intent, language, options, run, cancel))
        if cancel is None:
            await pipeline
            return run

        waiter = asyncio.create_task(cancel.wait())
        try:
            done, _ = await asyncio.wait({pipeline, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if pipeline not in done:
            pipeline.cancel()
            try:
                await pipeline
            except asyncio.CancelledError:
                if not pipeline.cancelled():
                    raise
        return run

    # ─── Pipeline ───────────────────────────────────────────

    async def _pipeline(
        self,
        intent: str,
        language: Language | str,
        options: ExecuteOptions,
        run: _Run,
        cancel: asyncio.Event | None,
    ) -> None:
        phase = Phase.DISCOVERY
        tokenizer = run.tokenizer
        try:
            language = Language.parse(language)
            check_env_allowlist(options.env_allowlist)

            # Discovery
            await self._ensure_index()
            prose, _ = split_snippet(intent)
            discovery = self.index.search(prose, limit=options.max_tools, threshold=options.threshold)
            if not discovery.entries:
                raise DiscoveryEmpty(intent, options.threshold)
            run.tools = [d.fqn for d in discovery.tools]
            run.servers = sorted({d.server for d in discovery.tools})
            self._record(run, phase, "selected", details={
                "scores": {e.descriptor.fqn: e.score for e in discovery.entries},
            })
            _checkpoint(cancel)

            # Generation
            phase = Phase.GENERATION
            unit = self.entry_builder.build_unit(intent, discovery.tools, language, snippet=options.snippet)
            self._record(run, phase, "generated", details={
                "language": language.value,
                "files": len(unit.tool_stubs),
                "token_cost_estimate": unit.token_cost_estimate,
            })
            _checkpoint(cancel)

            # Redaction (pre)
            phase = Phase.REDACTION_PRE
            pre = tokenizer.enabled and (options.redact.pre_execution or options.pii.redact_before_execution)
            if pre:
                unit = unit.model_copy(update={"entry": tokenizer.tokenize(unit.entry)})
            self._record(run, phase, "redacted" if pre else "skipped")
            _checkpoint(cancel)

            # Validation
            phase = Phase.VALIDATION
            report = CodeValidator(options.env_allowlist).validate(unit)
            run.risk_score = report.risk_score
            violations = [v.model_dump(mode="json") for v in report.violations]
            if not report.allowed:
                raise PolicyDenied(
                    f"Generated code rejected: risk {report.risk_score} ({report.risk_level.value}), "
                    f"{len(report.violations)} violation(s)",
                    violations=report.violations,
                    risk_score=report.risk_score,
                    details={"risk_level": report.risk_level.value, "violations": violations},
                )
            self._record(run, phase, "allowed", details={
                "risk_level": report.risk_level.value,
                "violations": violations,
            })
            _checkpoint(cancel)

            # Sandbox selection
            phase = Phase.SANDBOX_SELECTION
            level = await self.runtime.select_level(report.risk_level, language, options.isolation_level)
            limits: dict[str, Any] = {"wall_clock_ms": options.timeout_ms}
            if options.memory_bytes is not None:
                limits["memory_bytes"] = options.memory_bytes
            if options.cpu_quota is not None:
                limits["cpu_quota"] = options.cpu_quota
            context = ExecutionContext(
                isolation_level=level,
                resource_limits=ResourceLimits(**limits),
                network_policy=options.network,
                env_allowlist=options.env_allowlist,
            )
            self._record(run, phase, level.value, details={
                "isolation_level": level.value,
                "requested": options.isolation_level.value if options.isolation_level else None,
                "network": options.network.mode.value,
            })
            _checkpoint(cancel)

            # Execution
            phase = Phase.EXECUTION
            run.bridge = ToolBridge(
                self.pool,
                discovery.tools,
                network=options.network,
                tokenizer=tokenizer,
                detokenize_args=pre,
                request_timeout_ms=options.request_timeout_ms,
                retries=options.retries,
            )
            run.execution_started = time.monotonic()
            outcome = await self.runtime.run(unit, context, run.bridge)
            self._record(run, phase, "completed", details=self._execution_details(run, outcome.metrics))
            _checkpoint(cancel)

            # Summarization
            phase = Phase.SUMMARIZATION
            value = outcome.value
            if pre and not options.redact.post_execution:
                value = tokenizer.detokenize_value(value)
            summarizer = Summarizer(options.max_units)
            summary = summarizer.summarize(value, options.stats_fields)
            self._record(run, phase, "summarized", details={
                "units": len(summary),
                "truncated": len(serialize(value)) > options.max_units,
            })

            # Redaction (post)
            phase = Phase.REDACTION_POST
            post = tokenizer.enabled and options.redact.post_execution
            if post:
                summary = summarizer.summarize(tokenizer.tokenize_value(value), options.stats_fields)
            metrics = outcome.metrics.model_copy(update={"summary_tokens": estimate_tokens(summary)})
            self._record(run, phase, "redacted" if post else "skipped")

            run.result = ExecutionResult(
                success=True,
                summary=summary,
                metrics=metrics,
                redactions=tokenizer.redactions,
                execution_id=run.execution_id,
                tools_selected=run.tools,
            )
            logger.info(
                "Execution succeeded",
                extra={"execution_id": run.execution_id, "duration_ms": metrics.wall_ms},
            )
        except McpxError as exc:
            self._fail(run, phase, exc)
        except asyncio.CancelledError:
            self._fail(run, phase, Cancelled("Execution cancelled by caller"))
            await self._release_servers(run)
            raise
        except Exception as exc:
            logger.error("Unexpected pipeline failure", exc_info=True, extra={"phase": phase.value})
            self._fail(run, phase, Internal(f"{type(exc).__name__}: {exc}"))

    async def _ensure_index(self) -> None:
        if self._index_loaded:
            return
        async with self._index_lock:
            if not self._index_loaded:
                await asyncio.to_thread(self.index.load, self.settings.tools_dir)
                self._index_loaded = True

    async def _release_servers(self, run: _Run) -> None:
        """Shut down servers left with abandoned calls, without waiting on them."""
        if run.bridge is None or not run.bridge.cancelled_calls:
            return
        for server in run.servers:
            await self.pool.disconnect(server, wait=False)

    # ─── Audit and results ──────────────────────────────────

    def _execution_details(
        self,
        run: _Run,
        metrics: ExecutionMetrics | None = None,
        error_kind: str | None = None,
    ) -> dict[str, Any]:
        started = run.execution_started if run.execution_started is not None else run.started
        observation = Observation(
            execution_id=run.execution_id,
            wall_ms=metrics.wall_ms if metrics is not None else int((time.monotonic() - started) * 1000),
            memory_bytes=metrics.memory_peak_bytes if metrics is not None else 0,
            success=error_kind is None,
            error_kind=error_kind,
        )
        details: dict[str, Any] = {
            "anomalies": [a.model_dump(mode="json") for a in self.anomalies.observe(observation)],
            "server_stderr": {
                server: run.tokenizer.tokenize_value(self.pool.stderr_tail(server, 5))
                for server in run.servers
            },
        }
        if run.bridge is not None:
            details["tool_calls"] = run.bridge.tool_calls
            details["cancelled_calls"] = run.bridge.cancelled_calls
        if metrics is not None:
            details["wall_ms"] = metrics.wall_ms
            details["memory_peak_bytes"] = metrics.memory_peak_bytes
            details["exit_status"] = metrics.exit_status
        return details

    def _fail(self, run: _Run, phase: Phase, exc: McpxError) -> None:
        tokenizer = run.tokenizer
        summary = exc.one_line(SUMMARY_ERROR_LIMIT)
        summary = tokenizer.scrub(summary)
        if tokenizer.enabled:
            summary = tokenizer.tokenize(summary)

        details = dict(exc.details)
        if phase is Phase.EXECUTION:
            details.update(self._execution_details(run, error_kind=exc.kind))
        details = tokenizer.tokenize_value(_scrub_value(tokenizer, details))

        run.error = exc
        self._record(run, phase, "failed", error_kind=exc.kind, details=details)
        run.result = ExecutionResult(
            success=False,
            summary=summary or exc.kind,
            metrics=ExecutionMetrics(
                wall_ms=int((time.monotonic() - run.started) * 1000),
                tool_calls=run.bridge.tool_calls if run.bridge is not None else 0,
            ),
            redactions=tokenizer.redactions,
            error_kind=exc.kind,
            execution_id=run.execution_id,
            tools_selected=run.tools,
        )
        logger.warning(
            f"Execution failed: {exc.kind}",
            extra={"execution_id": run.execution_id, "phase": phase.value},
        )

    def _record(
        self,
        run: _Run,
        phase: Phase,
        decision: str,
        error_kind: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        logger.debug(
            f"Phase {phase.value}: {decision}",
            extra={"execution_id": run.execution_id, "phase": phase.value},
        )
        if self.audit is None:
            return
        self.audit.append(
            AuditRecord(
                execution_id=run.execution_id,
                phase=phase,
                decision=decision,
                risk_score=run.risk_score,
                tools_selected=list(run.tools),
                redactions_count=len(run.tokenizer),
                error_kind=error_kind,
                details=details or {},
            )
        )


def _checkpoint(cancel: asyncio.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise Cancelled("Execution cancelled by caller")


def _scrub_value(tokenizer: PiiTokenizer, value: Any) -> Any:
    if isinstance(value, str):
        return tokenizer.scrub(value)
    if isinstance(value, list):
        return [_scrub_value(tokenizer, v) for v in value]
    if isinstance(value, dict):
        return {k: _scrub_value(tokenizer, v) for k, v in value.items()}
    return value
