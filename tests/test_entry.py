"""Tests for entry synthesis and argument extraction."""

import ast

from mcpx.codegen.entry import EntryBuilder, extract_arguments, split_snippet
from mcpx.core.models import Language, ToolDescriptor


def _tool(properties, required=(), name="t", server="s"):
    return ToolDescriptor(
        name=name,
        server=server,
        description="",
        input_schema={"type": "object", "properties": properties, "required": list(required)},
    )


class TestSplitSnippet:
    def test_no_fence(self):
        assert split_snippet("read the file") == ("read the file", None)

    def test_fenced_block(self):
        prose, snippet = split_snippet("read the file\n```python\nresult = len(result)\n```\nplease")
        assert snippet == "result = len(result)"
        assert "```" not in prose
        assert prose.startswith("read the file")


class TestExtractArguments:
    def test_path(self, read_file_tool):
        assert extract_arguments("read the file /data/notes.txt", read_file_tool) == {"path": "/data/notes.txt"}

    def test_explicit_pair_wins(self, read_file_tool):
        args = extract_arguments("read /tmp/other.txt with path='/data/notes.txt'", read_file_tool)
        assert args == {"path": "/data/notes.txt"}

    def test_numbers_coerced(self):
        tool = _tool({"count": {"type": "integer"}, "ratio": {"type": "number"}})
        assert extract_arguments("count=42 ratio: 0.5", tool) == {"count": 42, "ratio": 0.5}

    def test_number_by_type(self):
        tool = _tool({"delay_ms": {"type": "integer"}}, required=["delay_ms"])
        assert extract_arguments("wait 250 milliseconds", tool) == {"delay_ms": 250}

    def test_url_and_email(self):
        tool = _tool({"url": {"type": "string"}, "email": {"type": "string"}})
        args = extract_arguments("send https://example.com/page to bob@example.com", tool)
        assert args == {"url": "https://example.com/page", "email": "bob@example.com"}

    def test_enum(self):
        tool = _tool({"unit": {"enum": ["celsius", "fahrenheit"]}})
        assert extract_arguments("weather in Fahrenheit", tool) == {"unit": "fahrenheit"}

    def test_quoted_string(self):
        tool = _tool({"title": {"type": "string"}})
        assert extract_arguments('create an issue titled "Crash on start"', tool) == {"title": "Crash on start"}

    def test_required_query_falls_back_to_intent(self):
        tool = _tool({"query": {"type": "string"}}, required=["query"])
        assert extract_arguments("latest rust news", tool) == {"query": "latest rust news"}

    def test_boolean_pair(self):
        tool = _tool({"recursive": {"type": "boolean"}})
        assert extract_arguments("recursive=yes", tool) == {"recursive": True}


class TestEntryBuilder:
    def test_python_entry(self, read_file_tool):
        unit = EntryBuilder().build_unit("read the file /data/notes.txt", [read_file_tool], Language.PYTHON)
        assert unit.language is Language.PYTHON
        assert unit.tools == ["fs.read_file"]
        assert "from servers.fs import read_file" in unit.entry
        assert 'result = await read_file(path="/data/notes.txt")' in unit.entry
        assert "return result" in unit.entry
        ast.parse(unit.entry)
        assert unit.token_cost_estimate > 0

    def test_python_entry_with_snippet(self, read_file_tool):
        intent = "read the file /data/notes.txt\n```python\nresult = result['content'].upper()\n```"
        unit = EntryBuilder().build_unit(intent, [read_file_tool], Language.PYTHON)
        tree = ast.parse(unit.entry)
        main = next(n for n in tree.body if isinstance(n, ast.AsyncFunctionDef))
        assert main.name == "main"
        assert "result = result['content'].upper()" in unit.entry

    def test_missing_required_becomes_none(self, read_file_tool):
        unit = EntryBuilder().build_unit("read something", [read_file_tool], Language.PYTHON)
        assert "read_file(path=None)" in unit.entry

    def test_typescript_entry(self, read_file_tool):
        unit = EntryBuilder().build_unit("read the file /data/notes.txt", [read_file_tool], "ts")
        assert 'import { readFile } from "./servers/fs";' in unit.entry
        assert "export async function main(): Promise<unknown> {" in unit.entry
        assert 'await readFile({ path: "/data/notes.txt" } as any);' in unit.entry

    def test_same_function_name_across_servers_is_aliased(self):
        a = _tool({}, name="search", server="docs")
        b = _tool({}, name="search", server="web")
        unit = EntryBuilder().build_unit("search", [a, b], Language.PYTHON)
        assert "from servers.docs import search as docs_search" in unit.entry
        assert "from servers.web import search as web_search" in unit.entry
        assert "result = await docs_search()" in unit.entry
