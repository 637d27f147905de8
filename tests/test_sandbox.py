"""Tests for the sandbox runtime, its backends and the tool bridge."""

import tempfile
import textwrap
import time

import httpx
import pytest

from mcpx.codegen.entry import EntryBuilder
from mcpx.config import Settings
from mcpx.core.models import (
    ExecutionContext,
    GeneratedUnit,
    IsolationLevel,
    Language,
    NetworkMode,
    NetworkPolicy,
    ResourceLimits,
    RiskLevel,
)
from mcpx.exceptions import (
    ConfigError,
    Internal,
    PolicyDenied,
    SandboxUnavailable,
    Timeout,
    ToolError,
)
from mcpx.sandbox.bridge import ToolBridge
from mcpx.sandbox.container import ContainerSandbox
from mcpx.sandbox.preamble import PY_LAUNCHER, VM_RUNNER, unit_files
from mcpx.sandbox.process import ProcessSandbox, allowlisted_env, check_env_allowlist, typescript_runtime
from mcpx.sandbox.runtime import SandboxRuntime
from mcpx.sandbox.vm import VmSandbox


class FakePool:
    """Stands in for ServerPool; answers read_file and records calls."""

    def __init__(self, error=None):
        self.calls = []
        self.error = error

    async def call_tool(self, server, tool, arguments=None, timeout_ms=None, retries=None):
        self.calls.append((server, tool, arguments))
        if self.error is not None:
            raise self.error
        return {"content": "hello", "path": arguments.get("path")}


class StubBackend(ProcessSandbox):
    def __init__(self, level, available=True):
        super().__init__()
        self.level = level
        self.ok = available

    async def check(self, language):
        if not self.ok:
            raise SandboxUnavailable(self.level.value, "disabled for this test")


def _runtime(**available):
    backends = {
        level: StubBackend(level, available.get(level.value, True))
        for level in IsolationLevel
    }
    return SandboxRuntime(Settings(), backends)


def _unit(entry):
    return GeneratedUnit(language=Language.PYTHON, entry=textwrap.dedent(entry).lstrip())


def _context(level=IsolationLevel.PROCESS, wall_clock_ms=20_000):
    return ExecutionContext(
        isolation_level=level,
        resource_limits=ResourceLimits(wall_clock_ms=wall_clock_ms),
    )


# ─── Level selection ────────────────────────────────────────


class TestSelectLevel:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "risk, expected",
        [
            (RiskLevel.LOW, IsolationLevel.PROCESS),
            (RiskLevel.MEDIUM, IsolationLevel.VM),
            (RiskLevel.HIGH, IsolationLevel.CONTAINER),
        ],
    )
    async def test_risk_maps_to_minimum_level(self, risk, expected):
        assert await _runtime().select_level(risk, Language.PYTHON) is expected

    @pytest.mark.asyncio
    async def test_typescript_skips_vm(self):
        level = await _runtime().select_level(RiskLevel.MEDIUM, Language.TYPESCRIPT)
        assert level is IsolationLevel.CONTAINER

    @pytest.mark.asyncio
    async def test_unavailable_level_is_not_downgraded(self):
        with pytest.raises(SandboxUnavailable):
            await _runtime(container=False).select_level(RiskLevel.HIGH, Language.PYTHON)

    @pytest.mark.asyncio
    async def test_pinned_unavailable_level(self):
        with pytest.raises(SandboxUnavailable):
            await _runtime(vm=False).select_level(RiskLevel.LOW, Language.PYTHON, IsolationLevel.VM)

    @pytest.mark.asyncio
    async def test_pinned_lower_level_is_honoured(self):
        level = await _runtime().select_level(RiskLevel.HIGH, Language.PYTHON, IsolationLevel.PROCESS)
        assert level is IsolationLevel.PROCESS

    @pytest.mark.asyncio
    async def test_vm_rejects_typescript(self):
        with pytest.raises(SandboxUnavailable):
            await VmSandbox().check(Language.TYPESCRIPT)


# ─── Environment and preamble ───────────────────────────────


class TestEnvironment:
    def test_secret_names_refused(self):
        with pytest.raises(ConfigError, match="API_KEY"):
            check_env_allowlist(["LANG", "API_KEY"])

    def test_names_sorted_and_unique(self):
        assert check_env_allowlist(["LANG", "HOME", "LANG"]) == ["HOME", "LANG"]

    def test_only_present_names_copied(self):
        assert allowlisted_env(["LANG", "MISSING"], {"LANG": "C", "OTHER": "x"}) == {"LANG": "C"}

    def test_process_env_starts_empty(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MCPX_TEST_SECRETISH", "should-not-leak")
        spec = ProcessSandbox().launch_spec(Language.PYTHON, "_launch.py", tmp_path, _context())
        assert "MCPX_TEST_SECRETISH" not in spec.env
        assert spec.env["HOME"] == str(tmp_path)


class TestPreamble:
    def test_python_process_files(self, read_file_tool):
        unit = EntryBuilder().build_unit("read /data/notes.txt", [read_file_tool], Language.PYTHON)
        files = unit_files(unit, IsolationLevel.PROCESS)
        assert files["main.py"] == unit.entry
        assert files["_launch.py"] == PY_LAUNCHER
        assert "dispatcher.py" in files
        assert any(path.startswith("servers/") for path in files)

    def test_vm_uses_restricted_runner(self, read_file_tool):
        unit = EntryBuilder().build_unit("read /data/notes.txt", [read_file_tool], Language.PYTHON)
        assert unit_files(unit, IsolationLevel.VM)["_launch.py"] == VM_RUNNER

    def test_typescript_files(self, read_file_tool):
        unit = EntryBuilder().build_unit("read /data/notes.txt", [read_file_tool], Language.TYPESCRIPT)
        files = unit_files(unit, IsolationLevel.PROCESS)
        assert {"dispatcher.ts", "main.ts", "_launch.ts"} <= set(files)


class TestContainerSpec:
    def test_locked_down_flags(self, tmp_path):
        sandbox = ContainerSandbox(Settings(python_image="python:3.12-slim"))
        sandbox._runtime = "/usr/bin/docker"
        spec = sandbox.launch_spec(Language.PYTHON, "_launch.py", tmp_path, _context(IsolationLevel.CONTAINER))
        argv = spec.argv
        assert argv[argv.index("--network") + 1] == "none"
        assert argv[argv.index("--cap-drop") + 1] == "ALL"
        assert "--read-only" in argv
        assert "python:3.12-slim" in argv
        assert spec.name and spec.name.startswith("mcpx-")

    def test_unprobed_runtime(self, tmp_path):
        with pytest.raises(SandboxUnavailable):
            ContainerSandbox().launch_spec(Language.PYTHON, "_launch.py", tmp_path, _context())

    def test_creation_time_labelled(self, tmp_path):
        sandbox = ContainerSandbox()
        sandbox._runtime = "/usr/bin/podman"
        argv = sandbox.launch_spec(Language.PYTHON, "_launch.py", tmp_path, _context(IsolationLevel.CONTAINER)).argv
        labels = [argv[i + 1] for i, arg in enumerate(argv) if arg == "--label"]
        assert labels[0] == "mcpx.sandbox=true"
        key, _, created = labels[1].partition("=")
        assert key == "mcpx.sandbox.created"
        assert abs(int(created) - time.time()) < 60


def _fake_runtime(tmp_path, listing):
    """A runtime CLI that lists ``listing`` and records removals."""
    removed = tmp_path / "removed.txt"
    script = tmp_path / "fake-runtime"
    script.write_text(
        "#!/bin/sh\n"
        'case "$1" in\n'
        "  info) exit 0 ;;\n"
        f"  ps) printf '%s' '{listing}' ;;\n"
        f'  rm) echo "$3" >> {removed} ;;\n'
        "esac\n"
    )
    script.chmod(0o755)
    return str(script), removed


class TestContainerPrune:
    @pytest.mark.asyncio
    async def test_old_and_unlabelled_removed(self, tmp_path):
        now = int(time.time())
        listing = f"aaa {now - 7200}\nbbb {now}\nccc <no value>\n"
        runtime, removed = _fake_runtime(tmp_path, listing)
        sandbox = ContainerSandbox(Settings(container_runtime=runtime))
        assert await sandbox.prune(max_age_s=3600) == ["aaa", "ccc"]
        assert removed.read_text().split() == ["aaa", "ccc"]

    @pytest.mark.asyncio
    async def test_limit_per_sweep(self, tmp_path):
        listing = "".join(f"c{i} 0\n" for i in range(5))
        runtime, removed = _fake_runtime(tmp_path, listing)
        sandbox = ContainerSandbox(Settings(container_runtime=runtime))
        assert await sandbox.prune(max_age_s=0, limit=2) == ["c0", "c1"]

    @pytest.mark.asyncio
    async def test_nothing_to_prune(self, tmp_path):
        runtime, removed = _fake_runtime(tmp_path, "")
        assert await ContainerSandbox(Settings(container_runtime=runtime)).prune() == []
        assert not removed.exists()

    @pytest.mark.asyncio
    async def test_no_runtime(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PATH", str(tmp_path))
        with pytest.raises(SandboxUnavailable, match="no container runtime"):
            await ContainerSandbox().prune()


# ─── Bridge ─────────────────────────────────────────────────


class TestBridge:
    @pytest.mark.asyncio
    async def test_selected_tool_is_called(self, read_file_tool):
        pool = FakePool()
        bridge = ToolBridge(pool, [read_file_tool])
        reply = await bridge.handle({"method": "call", "tool": "fs.read_file", "args": {"path": "/x"}})
        assert reply == {"success": True, "payload": {"content": "hello", "path": "/x"}}
        assert pool.calls == [("fs", "read_file", {"path": "/x"})]
        assert bridge.tool_calls == 1

    @pytest.mark.asyncio
    async def test_unselected_tool_denied(self, read_file_tool):
        pool = FakePool()
        bridge = ToolBridge(pool, [read_file_tool])
        reply = await bridge.handle({"method": "call", "tool": "fs.write_file", "args": {}})
        assert reply["success"] is False
        assert reply["kind"] == "PolicyDenied"
        assert pool.calls == []

    @pytest.mark.asyncio
    async def test_tool_error_forwarded(self, read_file_tool):
        bridge = ToolBridge(FakePool(error=ToolError(-32002, "No such file")), [read_file_tool])
        reply = await bridge.handle({"method": "call", "tool": "fs.read_file", "args": {}})
        assert reply["kind"] == "ToolError"
        assert reply["code"] == -32002
        assert isinstance(bridge.last_error, ToolError)

    @pytest.mark.asyncio
    async def test_unknown_method(self):
        reply = await ToolBridge(FakePool(), []).handle({"method": "spawn"})
        assert reply["success"] is False

    @pytest.mark.asyncio
    async def test_fetch_allowlisted_host(self):
        seen = []

        def handler(request):
            seen.append(request.url.host)
            return httpx.Response(200, text="pong")

        bridge = ToolBridge(
            FakePool(),
            [],
            network=NetworkPolicy(mode=NetworkMode.ALLOWLIST, hosts=["example.com"]),
            transport=httpx.MockTransport(handler),
        )
        result = await bridge.fetch("https://api.example.com/ping")
        assert result["status"] == 200
        assert result["text"] == "pong"
        assert seen == ["api.example.com"]

    @pytest.mark.asyncio
    async def test_fetch_other_host_denied(self):
        bridge = ToolBridge(
            FakePool(),
            [],
            network=NetworkPolicy(mode=NetworkMode.ALLOWLIST, hosts=["example.com"]),
            transport=httpx.MockTransport(lambda request: httpx.Response(200)),
        )
        with pytest.raises(PolicyDenied):
            await bridge.fetch("https://evil.example.org/")

    @pytest.mark.asyncio
    async def test_network_off_by_default(self):
        with pytest.raises(PolicyDenied):
            await ToolBridge(FakePool(), []).fetch("https://example.com/")

    @pytest.mark.asyncio
    async def test_pii_round_trip(self, read_file_tool):
        from mcpx.security.pii import PiiTokenizer

        tokenizer = PiiTokenizer()
        tokenizer.tokenize("a@b.com")
        pool = FakePool()
        bridge = ToolBridge(pool, [read_file_tool], tokenizer=tokenizer, detokenize_args=True)
        value = await bridge.call("fs.read_file", {"path": "[EMAIL_1]"})
        assert pool.calls == [("fs", "read_file", {"path": "a@b.com"})]
        assert value["path"] == "[EMAIL_1]"


# ─── Runs ───────────────────────────────────────────────────


@pytest.fixture
def scratch(tmp_path, monkeypatch):
    """Route sandbox workdirs into ``tmp_path`` so their removal can be checked."""
    monkeypatch.setattr(tempfile, "tempdir", str(tmp_path))
    return tmp_path


def _leftover(root):
    return [p for p in root.iterdir() if p.name.startswith("mcpx-")]


class TestProcessRun:
    @pytest.mark.asyncio
    async def test_generated_unit(self, read_file_tool, scratch):
        unit = EntryBuilder().build_unit("read /data/notes.txt", [read_file_tool], Language.PYTHON)
        bridge = ToolBridge(FakePool(), [read_file_tool])
        outcome = await SandboxRuntime().run(unit, _context(), bridge)
        assert outcome.value == {"content": "hello", "path": "/data/notes.txt"}
        assert outcome.metrics.tool_calls == 1
        assert outcome.metrics.exit_status == 0
        assert _leftover(scratch) == []

    @pytest.mark.asyncio
    async def test_console_output_captured(self, scratch):
        unit = _unit(
            """
            async def main():
                print("working")
                return 42
            """
        )
        outcome = await SandboxRuntime().run(unit, _context(), ToolBridge(FakePool(), []))
        assert outcome.value == 42
        assert outcome.stdout == "working\n"

    @pytest.mark.asyncio
    async def test_parallel_calls(self, read_file_tool, scratch):
        unit = _unit(
            """
            import asyncio
            from dispatcher import call

            async def main():
                results = await asyncio.gather(
                    call("fs.read_file", {"path": "/a"}),
                    call("fs.read_file", {"path": "/b"}),
                )
                return [r["path"] for r in results]
            """
        )
        pool = FakePool()
        outcome = await SandboxRuntime().run(unit, _context(), ToolBridge(pool, [read_file_tool]))
        assert outcome.value == ["/a", "/b"]
        assert len(pool.calls) == 2

    @pytest.mark.asyncio
    async def test_tool_error_propagates(self, read_file_tool, scratch):
        unit = EntryBuilder().build_unit("read /missing", [read_file_tool], Language.PYTHON)
        bridge = ToolBridge(FakePool(error=ToolError(-32002, "No such file")), [read_file_tool])
        with pytest.raises(ToolError) as info:
            await SandboxRuntime().run(unit, _context(), bridge)
        assert info.value.code == -32002
        assert _leftover(scratch) == []

    @pytest.mark.asyncio
    async def test_unselected_tool_denied(self, read_file_tool, scratch):
        unit = _unit(
            """
            from dispatcher import call

            async def main():
                return await call("fs.delete_everything", {})
            """
        )
        with pytest.raises(PolicyDenied):
            await SandboxRuntime().run(unit, _context(), ToolBridge(FakePool(), [read_file_tool]))

    @pytest.mark.asyncio
    async def test_exception_in_unit(self, scratch):
        unit = _unit(
            """
            async def main():
                raise ValueError("bad input")
            """
        )
        with pytest.raises(Internal, match="bad input"):
            await SandboxRuntime().run(unit, _context(), ToolBridge(FakePool(), []))

    @pytest.mark.asyncio
    async def test_wall_clock_timeout(self, scratch):
        unit = _unit(
            """
            import asyncio

            async def main():
                await asyncio.sleep(30)
            """
        )
        with pytest.raises(Timeout) as info:
            await SandboxRuntime().run(unit, _context(wall_clock_ms=500), ToolBridge(FakePool(), []))
        assert info.value.timeout_ms == 500
        assert _leftover(scratch) == []

    @pytest.mark.asyncio
    @pytest.mark.skipif(typescript_runtime() is None, reason="no TypeScript runtime on PATH")
    async def test_typescript_unit(self, read_file_tool, scratch):
        unit = EntryBuilder().build_unit("read /data/notes.txt", [read_file_tool], Language.TYPESCRIPT)
        bridge = ToolBridge(FakePool(), [read_file_tool])
        outcome = await SandboxRuntime().run(unit, _context(), bridge)
        assert outcome.value["content"] == "hello"


class TestVmRun:
    @pytest.mark.asyncio
    async def test_generated_unit(self, read_file_tool, scratch):
        unit = EntryBuilder().build_unit("read /data/notes.txt", [read_file_tool], Language.PYTHON)
        bridge = ToolBridge(FakePool(), [read_file_tool])
        outcome = await SandboxRuntime().run(unit, _context(IsolationLevel.VM), bridge)
        assert outcome.value["content"] == "hello"

    @pytest.mark.asyncio
    async def test_forbidden_import(self, scratch):
        unit = _unit(
            """
            import os

            async def main():
                return os.getcwd()
            """
        )
        with pytest.raises(PolicyDenied, match="not allowed"):
            await SandboxRuntime().run(unit, _context(IsolationLevel.VM), ToolBridge(FakePool(), []))

    @pytest.mark.asyncio
    async def test_dunder_access_rejected(self, scratch):
        unit = _unit(
            """
            async def main():
                return ().__class__.__bases__
            """
        )
        with pytest.raises(PolicyDenied):
            await SandboxRuntime().run(unit, _context(IsolationLevel.VM), ToolBridge(FakePool(), []))

    @pytest.mark.asyncio
    async def test_attribute_lookup_by_string_unavailable(self, scratch):
        unit = _unit(
            """
            import operator

            async def main():
                imp = operator.attrgetter('__self__.__import__')(len)
                return imp('os').listdir('/')
            """
        )
        with pytest.raises(PolicyDenied, match="operator"):
            await SandboxRuntime().run(unit, _context(IsolationLevel.VM), ToolBridge(FakePool(), []))

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "expression",
        ["asyncio.sleep(0).cr_frame", "asyncio.gather().get_loop()", "asyncio.gather()._loop"],
    )
    async def test_frame_and_loop_handles_rejected(self, scratch, expression):
        unit = _unit(
            f"""
            import asyncio

            async def main():
                return repr({expression})
            """
        )
        with pytest.raises(PolicyDenied, match="not allowed"):
            await SandboxRuntime().run(unit, _context(IsolationLevel.VM), ToolBridge(FakePool(), []))

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "module,member",
        [("functools", "singledispatch"), ("string", "Formatter"), ("typing", "get_type_hints")],
    )
    async def test_module_surface_is_curated(self, scratch, module, member):
        unit = _unit(
            f"""
            import {module}

            async def main():
                return repr({module}.{member})
            """
        )
        with pytest.raises(Internal, match="AttributeError"):
            await SandboxRuntime().run(unit, _context(IsolationLevel.VM), ToolBridge(FakePool(), []))

    @pytest.mark.asyncio
    async def test_typed_shapes_available(self, scratch):
        unit = _unit(
            """
            from typing import NotRequired, TypedDict

            Point = TypedDict("Point", {"x": int, "label": NotRequired[str]})

            async def main():
                point: Point = {"x": 1}
                return point
            """
        )
        outcome = await SandboxRuntime().run(unit, _context(IsolationLevel.VM), ToolBridge(FakePool(), []))
        assert outcome.value == {"x": 1}

    @pytest.mark.asyncio
    async def test_pure_modules_allowed(self, scratch):
        unit = _unit(
            """
            import json
            import math

            async def main():
                return json.loads(json.dumps({"root": math.sqrt(16)}))
            """
        )
        outcome = await SandboxRuntime().run(unit, _context(IsolationLevel.VM), ToolBridge(FakePool(), []))
        assert outcome.value == {"root": 4.0}
