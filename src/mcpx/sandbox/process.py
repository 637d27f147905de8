"""
MCPX Process Sandbox

Isolation level ``process``: the unit runs in a managed interpreter
subprocess (the host Python for Python units, ``bun`` or ``tsx`` for
TypeScript) under OS resource limits:

- RLIMIT_CPU derived from the wall clock and cpu quota
- RLIMIT_AS at the memory cap (Python units)
- RLIMIT_NOFILE and RLIMIT_FSIZE
- a new session, so the whole group is killed on teardown

The environment starts empty. Only allowlisted variables are copied, plus
the fixed runtime variables the interpreter needs.
"""

from __future__ import annotations

import math
import os
import re
import resource
import shutil
import signal
import sys
from collections.abc import Callable, Iterable, Mapping
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path

from mcpx.config import Settings
from mcpx.core.models import ExecutionContext, IsolationLevel, Language
from mcpx.exceptions import ConfigError, SandboxUnavailable

SECRET_ENV_RE = re.compile(r"KEY|SECRET|TOKEN|PASSWORD|PASSWD|CREDENTIAL", re.IGNORECASE)
SYSTEM_PATH = "/usr/local/bin:/usr/bin:/bin"


@dataclass
class LaunchSpec:
    """How to start one sandbox process."""

    argv: list[str]
    env: dict[str, str]
    cwd: Path
    preexec: Callable[[], None] | None = None
    name: str | None = None


def check_env_allowlist(names: Iterable[str]) -> list[str]:
    """Reject secret-looking variable names; return the names sorted."""
    names = sorted(set(names))
    refused = [n for n in names if SECRET_ENV_RE.search(n)]
    if refused:
        raise ConfigError(
            f"env_allowlist may not contain secret-like names: {', '.join(refused)}",
            details={"refused": refused},
        )
    return names


def allowlisted_env(names: Iterable[str], environ: Mapping[str, str] | None = None) -> dict[str, str]:
    environ = os.environ if environ is None else environ
    return {n: environ[n] for n in check_env_allowlist(names) if n in environ}


def _lower(kind: int, value: int) -> None:
    _, hard = resource.getrlimit(kind)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    resource.setrlimit(kind, (value, value))


def typescript_runtime() -> list[str] | None:
    """Command prefix of the first TypeScript runtime on PATH."""
    bun = shutil.which("bun")
    if bun:
        return [bun, "run"]
    tsx = shutil.which("tsx")
    if tsx:
        return [tsx]
    return None


class ProcessSandbox:
    """Managed interpreter subprocess with OS-level limits."""

    level = IsolationLevel.PROCESS
    measures_memory = True

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()

    async def check(self, language: Language) -> None:
        """Raise SandboxUnavailable if this level cannot run ``language`` here."""
        if os.name != "posix":
            raise SandboxUnavailable(self.level.value, "resource limits need a POSIX host")
        if language is Language.TYPESCRIPT and typescript_runtime() is None:
            raise SandboxUnavailable(self.level.value, "no TypeScript runtime (bun or tsx) on PATH")

    def launch_spec(
        self,
        language: Language,
        launcher: str,
        workdir: Path,
        context: ExecutionContext,
    ) -> LaunchSpec:
        env = allowlisted_env(context.env_allowlist)
        env.update({"HOME": str(workdir), "LANG": "C.UTF-8"})
        if language is Language.PYTHON:
            argv = [sys.executable, "-E", "-s", "-B", launcher]
            env.update({
                "PYTHONIOENCODING": "utf-8",
                "PYTHONDONTWRITEBYTECODE": "1",
                "PYTHONUNBUFFERED": "1",
            })
        else:
            runtime = typescript_runtime()
            if runtime is None:
                raise SandboxUnavailable(self.level.value, "no TypeScript runtime (bun or tsx) on PATH")
            argv = [*runtime, launcher]
            env.update({
                "PATH": os.pathsep.join([os.path.dirname(runtime[0]), SYSTEM_PATH]),
                "NO_COLOR": "1",
            })
        return LaunchSpec(
            argv=argv,
            env=env,
            cwd=workdir,
            preexec=self.limiter(context, language),
        )

    @staticmethod
    def limiter(context: ExecutionContext, language: Language) -> Callable[[], None]:
        limits = context.resource_limits
        cpu_seconds = math.ceil(limits.wall_clock_ms / 1000 * limits.cpu_quota) + 1
        nofile = 64 if language is Language.PYTHON else 256

        def apply() -> None:
            _lower(resource.RLIMIT_CPU, cpu_seconds)
            _lower(resource.RLIMIT_FSIZE, limits.disk_bytes)
            _lower(resource.RLIMIT_NOFILE, nofile)
            if language is Language.PYTHON:
                _lower(resource.RLIMIT_AS, limits.memory_bytes)

        return apply

    async def terminate(self, pid: int, spec: LaunchSpec) -> None:
        """Kill the sandbox process group."""
        with suppress(ProcessLookupError, PermissionError):
            os.killpg(pid, signal.SIGKILL)

    async def cleanup(self, spec: LaunchSpec) -> None:
        """Release level-specific resources after the process is gone."""
