"""
MCPX CLI

Command-line interface for the execution engine.

Commands:
    mcp-execute "intent"          Run one intent through the pipeline
    mcp-add                       Register a tool server (prompts for missing values)
    mcpx execute "intent"         Same as mcp-execute
    mcpx add                      Same as mcp-add
    mcpx tools [query]            List indexed tools, ranked when a query is given
    mcpx generate                 Write wrapper modules to the output root
    mcpx audit [execution_id]     Show audit records
    mcpx audit-verify             Verify the audit log hash chain
    mcpx sandbox-prune            Remove orphaned sandbox containers

Exit codes of mcp-execute: 0 success, 2 DiscoveryEmpty, 3 PolicyDenied,
4 SandboxUnavailable, 5 Timeout, 1 anything else. On failure stderr holds a
single ``Kind: message`` line; the audit log holds the full record.

Usage:
    pip install mcpx
    mcp-execute "read the file /data/notes.txt" --language ts --timeout 5000
"""

from __future__ import annotations

import asyncio
import json
import os
import shlex
import sys
from pathlib import Path
from typing import Any

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from mcpx import __version__
from mcpx.audit.trail import load_file, verify_chain
from mcpx.client.pool import ServerPool
from mcpx.codegen.generator import WrapperGenerator
from mcpx.config import ServerConfig, Settings, save_server_config
from mcpx.core.models import (
    ExecutionResult,
    IsolationLevel,
    Language,
    NetworkMode,
    NetworkPolicy,
    RedactOptions,
)
from mcpx.discovery.index import ToolIndex
from mcpx.discovery.schema import descriptor_to_bundle_entry, parse_document
from mcpx.engine.orchestrator import Orchestrator
from mcpx.exceptions import ConfigError, McpxError, McpxIOError, exit_code_for
from mcpx.logging import configure_logging
from mcpx.sandbox.container import ContainerSandbox

LANGUAGE_CHOICES = ["ts", "py", "typescript", "python"]
ERROR_LINE_LIMIT = 500

console = Console()


def _setup_logging() -> None:
    configure_logging(
        level=os.environ.get("MCPX_LOG_LEVEL", "ERROR"),
        json_output=os.environ.get("MCPX_LOG_JSON") == "1",
    )


def _settings(**overrides: Any) -> Settings:
    settings = Settings.from_env()
    updates = {k: v for k, v in overrides.items() if v is not None}
    return settings.model_copy(update=updates) if updates else settings


def _fail(exc: McpxError) -> None:
    """Print the single-line error and exit with the kind's status."""
    click.echo(exc.one_line(ERROR_LINE_LIMIT), err=True)
    sys.exit(exc.exit_code)


def _parse_env_pairs(pairs: tuple[str, ...]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got '{pair}'", param_hint="--env")
        env[key.strip()] = value
    return env


# ─── mcp-execute ────────────────────────────────────────────

@click.command("mcp-execute")
@click.argument("intent")
@click.option("--language", "-l", type=click.Choice(LANGUAGE_CHOICES), default="ts", show_default=True)
@click.option("--tools-dir", type=click.Path(file_okay=False, path_type=Path), help="Tool metadata directory.")
@click.option("--timeout", "timeout_ms", type=click.IntRange(1, 300_000), help="Sandbox wall clock in ms.")
@click.option("--max-tools", type=click.IntRange(min=1), help="Maximum number of tools to select.")
@click.option("--threshold", type=click.FloatRange(0.0, 1.0), help="Minimum relevance score.")
@click.option(
    "--isolation",
    type=click.Choice([level.value for level in IsolationLevel]),
    help="Pin the isolation level instead of deriving it from risk.",
)
@click.option("--allow-env", multiple=True, help="Environment variable passed into the sandbox (repeatable).")
@click.option("--allow-host", multiple=True, help="Host reachable through fetch_url (repeatable).")
@click.option("--redact-pre", is_flag=True, help="Tokenize personal data before execution.")
@click.option("--no-redact-post", is_flag=True, help="Keep personal data in the summary.")
@click.option("--max-units", type=click.IntRange(min=64), help="Summary size bound in characters.")
@click.option("--stats-field", "stats_fields", multiple=True, help="Record field to aggregate in summaries.")
@click.option("--config", "server_config", type=click.Path(dir_okay=False, path_type=Path), help="Server configuration file.")
@click.option("--audit-log", type=click.Path(dir_okay=False, path_type=Path), help="Audit log file.")
@click.option("--json-output", is_flag=True, help="Print the full result as JSON.")
def execute_command(
    intent: str,
    language: str,
    tools_dir: Path | None,
    timeout_ms: int | None,
    max_tools: int | None,
    threshold: float | None,
    isolation: str | None,
    allow_env: tuple[str, ...],
    allow_host: tuple[str, ...],
    redact_pre: bool,
    no_redact_post: bool,
    max_units: int | None,
    stats_fields: tuple[str, ...],
    server_config: Path | None,
    audit_log: Path | None,
    json_output: bool,
) -> None:
    """Turn INTENT into sandboxed code, run it, and print the summary."""
    _setup_logging()
    try:
        settings = _settings(tools_dir=tools_dir, server_config=server_config, audit_log=audit_log)
        overrides: dict[str, Any] = {
            "max_tools": max_tools,
            "threshold": threshold,
            "timeout_ms": timeout_ms,
            "max_units": max_units,
            "isolation_level": isolation,
            "env_allowlist": list(allow_env),
            "stats_fields": list(stats_fields),
            "redact": RedactOptions(pre_execution=redact_pre, post_execution=not no_redact_post),
        }
        if allow_host:
            overrides["network"] = NetworkPolicy(mode=NetworkMode.ALLOWLIST, hosts=list(allow_host))
        result = asyncio.run(_run_execute(settings, intent, Language.parse(language), overrides))
    except McpxError as exc:
        _fail(exc)
    except ValidationError as exc:
        _fail(ConfigError(f"Invalid option: {exc.errors()[0]['msg']}"))
    except KeyboardInterrupt:
        click.echo("Cancelled: interrupted", err=True)
        sys.exit(exit_code_for("Cancelled"))

    _report(result, json_output)


async def _run_execute(
    settings: Settings,
    intent: str,
    language: Language,
    overrides: dict[str, Any],
) -> ExecutionResult:
    async with Orchestrator.from_settings(settings) as orchestrator:
        options = orchestrator.default_options(**overrides)
        return await orchestrator.execute(intent, language, options)


def _report(result: ExecutionResult, json_output: bool) -> None:
    if json_output:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2, sort_keys=True))
    elif result.success:
        click.echo(result.summary)
    if not result.success:
        click.echo(result.summary[:ERROR_LINE_LIMIT].replace("\n", " "), err=True)
    sys.exit(exit_code_for(result.error_kind))


# ─── mcp-add ────────────────────────────────────────────────

@click.command("mcp-add")
@click.option("--name", prompt="Server name", help="Name the server is registered under.")
@click.option("--command", "command", prompt="Command", help="Executable that starts the server.")
@click.option("--arg", "args", multiple=True, help="Argument passed to the command (repeatable).")
@click.option("--env", "env_pairs", multiple=True, help="KEY=VALUE set in the server environment (repeatable).")
@click.option("--config", "server_config", type=click.Path(dir_okay=False, path_type=Path), help="Server configuration file.")
@click.option("--probe/--no-probe", default=False, help="Start the server and store its tool schemas.")
@click.option("--tools-dir", type=click.Path(file_okay=False, path_type=Path), help="Where the schema bundle is written.")
def add_command(
    name: str,
    command: str,
    args: tuple[str, ...],
    env_pairs: tuple[str, ...],
    server_config: Path | None,
    probe: bool,
    tools_dir: Path | None,
) -> None:
    """Register a tool server in the server configuration file."""
    _setup_logging()
    name = name.strip()
    argv = list(args)
    if not argv and " " in command.strip():
        command, *argv = shlex.split(command)
    try:
        settings = _settings(server_config=server_config, tools_dir=tools_dir)
        server = ServerConfig(command=command, args=argv, env=_parse_env_pairs(env_pairs) or None)
        save_server_config(settings.server_config, name, server)
        console.print(f"[green]+[/] Registered [bold]{name}[/] in {settings.server_config}")
        if probe:
            bundle_path, count = asyncio.run(_probe(settings, name, server))
            console.print(f"[green]+[/] Stored {count} tool schema(s) in {bundle_path}")
    except McpxError as exc:
        _fail(exc)
    except ValidationError as exc:
        _fail(ConfigError(f"Invalid server entry: {exc.errors()[0]['msg']}"))


async def _probe(settings: Settings, name: str, server: ServerConfig) -> tuple[Path, int]:
    """Connect to the server, list its tools, and write ``<name>-tools.json``."""
    async with ServerPool(
        {name: server},
        request_timeout_ms=settings.request_timeout_ms,
        shutdown_grace_s=settings.shutdown_grace_s,
    ) as pool:
        tools = await pool.list_tools(name)

    descriptors, _ = parse_document(json.dumps({"mcp": name, "tools": tools}), source_uri=f"{name}:tools/list")
    bundle = {
        "version": 1,
        "mcp": name,
        "tools": [descriptor_to_bundle_entry(d) for d in descriptors],
    }
    path = Path(settings.tools_dir) / f"{name}-tools.json"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(bundle, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    except OSError as exc:
        raise McpxIOError(f"Cannot write {path}: {exc}") from exc
    return path, len(descriptors)


# ─── mcpx group ─────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__, prog_name="mcpx")
def main() -> None:
    """MCPX run natural-language intents against MCP tool servers."""


main.add_command(execute_command, name="execute")
main.add_command(add_command, name="add")


@main.command()
@click.argument("query", required=False)
@click.option("--tools-dir", type=click.Path(file_okay=False, path_type=Path))
@click.option("--limit", default=10, show_default=True, type=click.IntRange(min=1))
@click.option("--threshold", type=click.FloatRange(0.0, 1.0))
def tools(query: str | None, tools_dir: Path | None, limit: int, threshold: float | None) -> None:
    """List indexed tools, or rank them against QUERY."""
    _setup_logging()
    try:
        settings = _settings(tools_dir=tools_dir)
        index = ToolIndex()
        index.load(settings.tools_dir)
    except McpxError as exc:
        _fail(exc)

    table = Table(title=f"Tools in {settings.tools_dir}")
    table.add_column("Server", style="cyan")
    table.add_column("Tool", style="bold")
    table.add_column("Category")
    if query:
        table.add_column("Score", justify="right")
        result = index.search(query, limit=limit, threshold=settings.threshold if threshold is None else threshold)
        for entry in result.entries:
            d = entry.descriptor
            table.add_row(d.server, d.name, d.category, f"{entry.score:.2f}")
    else:
        table.add_column("Description")
        for d in index.all()[:limit]:
            table.add_row(d.server, d.name, d.category, d.description[:60])
    console.print(table)


@main.command()
@click.option("--language", "-l", type=click.Choice(LANGUAGE_CHOICES), default="ts", show_default=True)
@click.option("--tools-dir", type=click.Path(file_okay=False, path_type=Path))
@click.option("--output-root", type=click.Path(file_okay=False, path_type=Path))
@click.option("--server", "servers", multiple=True, help="Only generate wrappers for this server (repeatable).")
@click.option("--full", is_flag=True, help="Rewrite every module instead of only changed ones.")
def generate(
    language: str,
    tools_dir: Path | None,
    output_root: Path | None,
    servers: tuple[str, ...],
    full: bool,
) -> None:
    """Write wrapper modules for the indexed tools."""
    _setup_logging()
    try:
        settings = _settings(tools_dir=tools_dir, output_root=output_root)
        index = ToolIndex()
        index.load(settings.tools_dir)
        descriptors = [d for d in index.all() if not servers or d.server in servers]
        report = WrapperGenerator().generate(
            descriptors, Language.parse(language), settings.output_root, incremental=not full
        )
    except McpxError as exc:
        _fail(exc)

    console.print(
        f"Generated {len(descriptors)} tool(s) into {settings.output_root}: "
        f"[green]{len(report.written)} written[/], "
        f"[dim]{len(report.skipped)} unchanged[/], "
        f"[yellow]{len(report.deleted)} deleted[/]"
    )


@main.command()
@click.argument("execution_id", required=False)
@click.option("--audit-log", type=click.Path(dir_okay=False, path_type=Path))
def audit(execution_id: str | None, audit_log: Path | None) -> None:
    """Show audit records, optionally for one execution."""
    _setup_logging()
    try:
        path = _audit_path(audit_log)
        events = load_file(path)
    except McpxError as exc:
        _fail(exc)

    if execution_id:
        events = [e for e in events if e.record.execution_id == execution_id]
    if not events:
        console.print("  No audit records found.")
        return

    table = Table(title=f"Audit trail: {path}")
    table.add_column("#", justify="right")
    table.add_column("Execution")
    table.add_column("Phase")
    table.add_column("Decision")
    table.add_column("Risk", justify="right")
    table.add_column("Error")
    table.add_column("Hash", style="dim")
    for event in events:
        r = event.record
        table.add_row(
            str(event.sequence),
            r.execution_id,
            r.phase.value,
            r.decision,
            "" if r.risk_score is None else str(r.risk_score),
            r.error_kind or "",
            event.hash[:12],
        )
    console.print(table)


@main.command("audit-verify")
@click.option("--audit-log", type=click.Path(dir_okay=False, path_type=Path))
def audit_verify(audit_log: Path | None) -> None:
    """Verify the hash chain of the audit log."""
    _setup_logging()
    try:
        path = _audit_path(audit_log)
        valid, message = verify_chain(load_file(path))
    except McpxError as exc:
        _fail(exc)

    if valid:
        console.print(f"[green]OK[/] {message}")
    else:
        console.print(f"[red]BROKEN[/] {message}")
        sys.exit(1)


@main.command("sandbox-prune")
@click.option("--max-age", "max_age_s", type=click.FloatRange(min=0.0), help="Minimum age in seconds (default MCPX_ORPHAN_MAX_AGE_S).")
@click.option("--limit", default=100, show_default=True, type=click.IntRange(min=1))
def sandbox_prune(max_age_s: float | None, limit: int) -> None:
    """Remove sandbox containers left behind by interrupted runs."""
    _setup_logging()
    try:
        removed = asyncio.run(ContainerSandbox(_settings()).prune(max_age_s, limit))
    except McpxError as exc:
        _fail(exc)

    for container_id in removed:
        console.print(f"  [dim]removed[/] {container_id}")
    console.print(f"  [green]{len(removed)}[/] containers pruned")


def _audit_path(audit_log: Path | None) -> Path:
    if audit_log is not None:
        return audit_log
    settings = Settings.from_env()
    if settings.audit_log is None:
        raise ConfigError("audit log is disabled (MCPX_AUDIT_LOG=off)")
    return settings.audit_log


def execute_main() -> None:
    execute_command(prog_name="mcp-execute")


def add_main() -> None:
    add_command(prog_name="mcp-add")


if __name__ == "__main__":
    main()
