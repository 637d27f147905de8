"""
MCPX Wrapper Templates

Source templates for generated wrapper modules. Placeholders are
``__UPPER_CASE__`` tokens substituted in one regex pass; templates carry
no timestamps so identical inputs render byte-identical output.
"""

from __future__ import annotations

import re
import textwrap

PY_HEADER = "# Generated by mcpx; do not edit.\n"
TS_HEADER = "// Generated by mcpx; do not edit.\n"

PY_TOOL_MODULE = textwrap.dedent(
    '''
    __HEADER__# tool: __TOOL_FQN__
    # content-hash: __HASH__
    from typing import __TYPING__

    from dispatcher import call

    __SHAPES__TOOL = "__TOOL_FQN__"


    async def __FUNC__(__SIGNATURE__) -> __RETURN__:
        """__DOC__"""
        args: Dict[str, Any] = {}
    __ARG_LINES__    return await call(TOOL, args)
    '''
).lstrip()

PY_INDEX_MODULE = textwrap.dedent(
    '''
    __HEADER__# server: __SERVER__
    __IMPORTS__
    __all__ = [
    __ALL__]
    '''
).lstrip()

PY_PACKAGE_MODULE = "__HEADER__"

TS_TOOL_MODULE = textwrap.dedent(
    """
    __HEADER__// tool: __TOOL_FQN__
    // content-hash: __HASH__
    import { call } from "../../dispatcher";

    export interface __TYPE__Input {
    __FIELDS__}

    export type __TYPE__Output = __RETURN__;

    /**
    __DOC__ */
    export async function __FUNC__(input: __TYPE__Input__DEFAULT__): Promise<__TYPE__Output> {
      return call<__TYPE__Output>("__TOOL_FQN__", input as unknown as Record<string, unknown>);
    }
    """
).lstrip()

TS_INDEX_MODULE = textwrap.dedent(
    """
    __HEADER__// server: __SERVER__
    __EXPORTS__
    """
).lstrip()


_PLACEHOLDER_RE = re.compile(r"__([A-Z][A-Z_]*?)__")


def render(template: str, **values: str) -> str:
    """Substitute ``__KEY__`` placeholders in ``template`` in a single pass."""
    return _PLACEHOLDER_RE.sub(lambda m: values.get(m.group(1), m.group(0)), template)
