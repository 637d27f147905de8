"""
MCPX VM Sandbox

Isolation level ``vm``: Python units run in an embedded interpreter whose
builtins are reduced to a whitelist. Module loading goes through a
restricted importer (generated servers, the dispatcher and a few pure
standard modules, exposed as attribute-filtered namespaces); dunder
attribute access is rejected before any code runs. The interpreter itself
lives in a child process under the same OS limits as the process level.

TypeScript has no embedded interpreter here, so it is unavailable at this
level.
"""

from __future__ import annotations

from mcpx.core.models import IsolationLevel, Language
from mcpx.exceptions import SandboxUnavailable
from mcpx.sandbox.process import ProcessSandbox


class VmSandbox(ProcessSandbox):
    """Restricted-builtins interpreter in a limited child process."""

    level = IsolationLevel.VM

    async def check(self, language: Language) -> None:
        if language is not Language.PYTHON:
            raise SandboxUnavailable(self.level.value, "only Python units run in the restricted interpreter")
        await super().check(language)
