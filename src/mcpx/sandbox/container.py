"""
MCPX Container Sandbox

Isolation level ``container``: a fresh container per call, created with
podman or docker (first found, or ``MCPX_CONTAINER_RUNTIME``):

- no network (``--network none``), read-only root filesystem
- memory, CPU and pid caps, small noexec ``/tmp``
- all capabilities dropped, ``no-new-privileges``, unprivileged user
- the unit mounted read-only at ``/work``

Every container is labelled ``mcpx.sandbox=true`` (plus its creation time)
and force-removed on teardown, whatever the exit path. Containers left
behind by a host that died mid-run are swept by ``prune``.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import time
import uuid
from pathlib import Path

from mcpx.config import Settings
from mcpx.core.models import ExecutionContext, IsolationLevel, Language
from mcpx.exceptions import SandboxUnavailable
from mcpx.logging import get_logger
from mcpx.sandbox.process import LaunchSpec, ProcessSandbox, allowlisted_env

logger = get_logger("mcpx.sandbox")

CONTAINER_USER = "65534:65534"
CONTAINER_LABEL = "mcpx.sandbox=true"
CREATED_LABEL = "mcpx.sandbox.created"
PRUNE_LIMIT = 100
PIDS_LIMIT = 64
PROBE_TIMEOUT_S = 10.0


def detect_runtime(preferred: str | None = None) -> str | None:
    """Return the first available container runtime binary, or None."""
    candidates = [c for c in (preferred, "podman", "docker") if c]
    for candidate in candidates:
        path = shutil.which(candidate)
        if path:
            return path
    return None


async def _run_quiet(*argv: str, timeout: float = PROBE_TIMEOUT_S) -> int | None:
    status, _ = await _run_capture(*argv, timeout=timeout, capture=False)
    return status


async def _run_capture(
    *argv: str,
    timeout: float = PROBE_TIMEOUT_S,
    capture: bool = True,
) -> tuple[int | None, str]:
    """Run a runtime CLI command; return (status, stdout). Status is None if it could not run."""
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE if capture else asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        return None, ""
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        return None, ""
    return process.returncode, (stdout or b"").decode("utf-8", "replace")


class ContainerSandbox(ProcessSandbox):
    """One locked-down container per execution."""

    level = IsolationLevel.CONTAINER
    measures_memory = False

    def __init__(self, settings: Settings | None = None):
        super().__init__(settings)
        self._runtime: str | None = None
        self._probe: tuple[bool, str] | None = None
        self._probe_lock = asyncio.Lock()

    async def check(self, language: Language) -> None:
        await self._ensure_runtime()

    async def _ensure_runtime(self) -> str:
        async with self._probe_lock:
            if self._probe is None:
                self._probe = await self._detect()
        ok, reason = self._probe
        if not ok or self._runtime is None:
            raise SandboxUnavailable(self.level.value, reason)
        return self._runtime

    async def _detect(self) -> tuple[bool, str]:
        runtime = detect_runtime(self.settings.container_runtime)
        if runtime is None:
            return False, "no container runtime (podman or docker) on PATH"
        status = await _run_quiet(runtime, "info")
        if status != 0:
            return False, f"{os.path.basename(runtime)} is installed but not usable"
        self._runtime = runtime
        logger.info(f"Container runtime: {runtime}", extra={"isolation_level": self.level.value})
        return True, ""

    def image_for(self, language: Language) -> str:
        return self.settings.python_image if language is Language.PYTHON else self.settings.ts_image

    def launch_spec(
        self,
        language: Language,
        launcher: str,
        workdir: Path,
        context: ExecutionContext,
    ) -> LaunchSpec:
        if self._runtime is None:
            raise SandboxUnavailable(self.level.value, "container runtime has not been probed")
        _open_for_container_user(workdir)

        limits = context.resource_limits
        name = f"mcpx-{uuid.uuid4().hex[:12]}"
        argv = [
            self._runtime,
            "run",
            "--rm",
            "--interactive",
            "--name", name,
            "--label", CONTAINER_LABEL,
            "--label", f"{CREATED_LABEL}={int(time.time())}",
            "--network", "none",
            "--read-only",
            "--pids-limit", str(PIDS_LIMIT),
            "--memory", str(limits.memory_bytes),
            "--cpus", f"{limits.cpu_quota:g}",
            "--tmpfs", f"/tmp:rw,noexec,nosuid,nodev,size={limits.disk_bytes}",
            "--security-opt", "no-new-privileges",
            "--cap-drop", "ALL",
            "--user", CONTAINER_USER,
            "--volume", f"{workdir}:/work:ro",
            "--workdir", "/work",
            "--env", "HOME=/tmp",
        ]
        env = allowlisted_env(context.env_allowlist)
        if language is Language.PYTHON:
            env.update({"PYTHONIOENCODING": "utf-8", "PYTHONDONTWRITEBYTECODE": "1", "PYTHONUNBUFFERED": "1"})
        for key, value in sorted(env.items()):
            argv.extend(["--env", f"{key}={value}"])

        argv.append(self.image_for(language))
        if language is Language.PYTHON:
            argv.extend(["python3", "-E", "-s", "-B", launcher])
        else:
            argv.extend(["bun", "run", launcher])

        # The runtime CLI itself runs with the host environment.
        return LaunchSpec(argv=argv, env=dict(os.environ), cwd=workdir, name=name)

    async def terminate(self, pid: int, spec: LaunchSpec) -> None:
        await super().terminate(pid, spec)
        await self.cleanup(spec)

    async def cleanup(self, spec: LaunchSpec) -> None:
        if self._runtime is None or spec.name is None:
            return
        status = await _run_quiet(self._runtime, "rm", "-f", spec.name)
        logger.debug(f"Removed container {spec.name} (status={status})", extra={"isolation_level": self.level.value})

    async def prune(self, max_age_s: float | None = None, limit: int = PRUNE_LIMIT) -> list[str]:
        """Force-remove labelled containers older than ``max_age_s``.

        Containers without a readable creation label are treated as orphans.
        Returns the ids that were removed.
        """
        runtime = await self._ensure_runtime()
        if max_age_s is None:
            max_age_s = self.settings.orphan_max_age_s
        status, listing = await _run_capture(
            runtime, "ps", "-a",
            "--filter", f"label={CONTAINER_LABEL}",
            "--format", f'{{{{.ID}}}} {{{{.Label "{CREATED_LABEL}"}}}}',
        )
        if status != 0:
            raise SandboxUnavailable(self.level.value, f"could not list containers (status={status})")

        cutoff = time.time() - max_age_s
        stale: list[str] = []
        for line in listing.splitlines():
            parts = line.split()
            if not parts:
                continue
            created = parts[1] if len(parts) > 1 else ""
            if not created.isdigit() or int(created) <= cutoff:
                stale.append(parts[0])

        removed = []
        for container_id in stale[:limit]:
            if await _run_quiet(runtime, "rm", "-f", container_id) == 0:
                removed.append(container_id)
            else:
                logger.warning(f"Could not remove container {container_id}", extra={"isolation_level": self.level.value})
        if len(stale) > limit:
            logger.info(f"{len(stale) - limit} stale containers left for the next sweep")
        if removed:
            logger.info(f"Pruned {len(removed)} orphaned containers", extra={"isolation_level": self.level.value})
        return removed


def _open_for_container_user(workdir: Path) -> None:
    """Make the unit readable by the unprivileged container user."""
    os.chmod(workdir, 0o755)
    for root, dirs, files in os.walk(workdir):
        for d in dirs:
            os.chmod(os.path.join(root, d), 0o755)
        for f in files:
            os.chmod(os.path.join(root, f), 0o644)
