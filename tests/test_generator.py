"""Tests for wrapper generation and type projection."""

import ast
import json
import os

import pytest

from mcpx.codegen.generator import LOCK_NAME, MANIFEST_NAME, WrapperGenerator, estimate_tokens
from mcpx.codegen.types import TypeProjector, camel_case, pascal_case, snake_case
from mcpx.core.models import Language, ToolDescriptor
from mcpx.exceptions import GenerationBusy, SchemaRefUnresolved, SchemaUnsupported


def _tool(name="search_docs", server="docs", properties=None, required=None, output=None, definitions=None):
    schema = {"type": "object", "properties": properties or {}, "required": required or []}
    if definitions is not None:
        schema["definitions"] = definitions
    return ToolDescriptor(
        name=name, server=server, description="Search documents", input_schema=schema, output_schema=output
    )


class TestNames:
    @pytest.mark.parametrize(
        "raw,snake,camel",
        [
            ("read_file", "read_file", "readFile"),
            ("getWeather", "get_weather", "getWeather"),
            ("list-issues", "list_issues", "listIssues"),
            ("class", "class_", "class_"),
            ("2fa", "_2fa", "_2fa"),
        ],
    )
    def test_cases(self, raw, snake, camel):
        assert snake_case(raw) == snake
        assert camel_case(raw) == camel

    def test_pascal(self):
        assert pascal_case("read_file") == "ReadFile"

    def test_reserved_dispatcher_name(self):
        assert snake_case("call") == "call_"


class TestTypeProjection:
    def _project(self, schema, language, definitions=None):
        tool = _tool(definitions=definitions)
        return TypeProjector(tool, language).project(schema)

    def test_primitives(self):
        assert self._project({"type": "integer"}, Language.PYTHON) == "int"
        assert self._project({"type": "integer"}, Language.TYPESCRIPT) == "number"
        assert self._project({"type": "boolean"}, Language.PYTHON) == "bool"

    def test_array(self):
        assert self._project({"type": "array", "items": {"type": "string"}}, Language.PYTHON) == "List[str]"
        assert self._project({"type": "array", "items": {"type": "string"}}, Language.TYPESCRIPT) == "Array<string>"

    def test_enum(self):
        assert self._project({"enum": ["a", "b"]}, Language.PYTHON) == 'Literal["a", "b"]'
        assert self._project({"enum": ["a", "b"]}, Language.TYPESCRIPT) == '"a" | "b"'

    def test_object_typescript(self):
        schema = {"type": "object", "properties": {"x": {"type": "number"}}, "required": ["x"]}
        assert self._project(schema, Language.TYPESCRIPT) == "{ x: number }"

    def test_object_python_typed_dict(self):
        projector = TypeProjector(_tool(), Language.PYTHON)
        schema = {
            "type": "object",
            "properties": {"x": {"type": "number"}, "label": {"type": "string"}},
            "required": ["x"],
        }
        assert projector.project(schema, name="Point") == "Point"
        assert projector.shapes == {
            "Point": 'Point = TypedDict("Point", {"label": NotRequired[str], "x": float})',
        }
        assert {"TypedDict", "NotRequired"} <= projector.uses

    def test_nested_shapes_declared_first(self):
        projector = TypeProjector(_tool(), Language.PYTHON)
        schema = {
            "type": "object",
            "properties": {"items": {"type": "array", "items": {"type": "object", "properties": {"id": {"type": "integer"}}, "required": ["id"]}}},
            "required": ["items"],
        }
        assert projector.project(schema, name="Page") == "Page"
        assert list(projector.shapes) == ["PageItemsItem", "Page"]
        assert projector.shapes["Page"] == 'Page = TypedDict("Page", {"items": List[PageItemsItem]})'

    def test_all_of_merges_into_one_shape(self):
        definitions = {"Base": {"type": "object", "properties": {"id": {"type": "integer"}}, "required": ["id"]}}
        projector = TypeProjector(_tool(definitions=definitions), Language.PYTHON)
        schema = {"allOf": [{"$ref": "#/definitions/Base"}, {"type": "object", "properties": {"name": {"type": "string"}}}]}
        assert projector.project(schema, name="Record") == "Record"
        assert projector.shapes == {
            "Record": 'Record = TypedDict("Record", {"id": int, "name": NotRequired[str]})',
        }

    def test_shape_name_avoids_typing_names(self):
        definitions = {"List": {"type": "object", "properties": {"n": {"type": "integer"}}, "required": ["n"]}}
        projector = TypeProjector(_tool(definitions=definitions), Language.PYTHON)
        assert projector.project({"$ref": "#/definitions/List"}) == "List2"

    def test_nullable_union(self):
        assert self._project({"type": ["string", "null"]}, Language.PYTHON) == "Union[str, None]"

    def test_ref_resolved(self):
        definitions = {"Point": {"type": "object", "properties": {"x": {"type": "number"}}, "required": ["x"]}}
        result = self._project({"$ref": "#/definitions/Point"}, Language.TYPESCRIPT, definitions)
        assert result == "{ x: number }"

    def test_ref_unresolved(self):
        with pytest.raises(SchemaRefUnresolved):
            self._project({"$ref": "#/definitions/Missing"}, Language.TYPESCRIPT, {})

    def test_composite_without_definitions(self):
        with pytest.raises(SchemaUnsupported):
            self._project({"anyOf": [{"type": "string"}, {"type": "number"}]}, Language.PYTHON)

    def test_unsupported_keyword(self):
        with pytest.raises(SchemaUnsupported):
            self._project({"not": {"type": "string"}}, Language.PYTHON)

    def test_recursive_ref(self):
        definitions = {"Node": {"type": "object", "properties": {"next": {"$ref": "#/definitions/Node"}}}}
        with pytest.raises(SchemaUnsupported):
            self._project({"$ref": "#/definitions/Node"}, Language.TYPESCRIPT, definitions)


class TestRender:
    def test_python_layout(self, read_file_tool):
        files = WrapperGenerator().render([read_file_tool], Language.PYTHON)
        assert [f.path for f in files] == [
            "servers/__init__.py",
            "servers/fs/__init__.py",
            "servers/fs/read_file.py",
        ]

    def test_python_module_is_valid_and_typed(self, read_file_tool):
        files = {f.path: f for f in WrapperGenerator().render([read_file_tool], "py")}
        source = files["servers/fs/read_file.py"].content
        ast.parse(source)
        assert "from dispatcher import call" in source
        assert 'TOOL = "fs.read_file"' in source
        assert 'ReadFileResult = TypedDict("ReadFileResult", {"content": str})' in source
        assert "async def read_file(*, path: str) -> ReadFileResult:" in source
        assert "Absolute file path" in source
        assert files["servers/fs/read_file.py"].tool == "fs.read_file"

    def test_python_optional_parameter(self):
        tool = _tool(properties={"query": {"type": "string"}, "limit": {"type": "integer"}}, required=["query"])
        source = WrapperGenerator().render([tool], Language.PYTHON)[-1].content
        assert "query: str, limit: Optional[int] = None" in source
        assert "if limit is not None:" in source

    def test_python_object_parameter_is_typed(self):
        tool = _tool(
            properties={"filter": {"type": "object", "properties": {"tag": {"type": "string"}}, "required": ["tag"]}},
            required=["filter"],
        )
        source = WrapperGenerator().render([tool], Language.PYTHON)[-1].content
        ast.parse(source)
        assert 'SearchDocsFilter = TypedDict("SearchDocsFilter", {"tag": str})' in source
        assert "async def search_docs(*, filter: SearchDocsFilter) -> Any:" in source
        assert "from typing import Any, Dict, TypedDict" in source

    def test_typescript_layout(self, read_file_tool):
        files = {f.path: f.content for f in WrapperGenerator().render([read_file_tool], Language.TYPESCRIPT)}
        assert set(files) == {"servers/fs/index.ts", "servers/fs/readFile.ts"}
        module = files["servers/fs/readFile.ts"]
        assert 'import { call } from "../../dispatcher";' in module
        assert "export interface ReadFileInput {" in module
        assert "  path: string;" in module
        assert "export type ReadFileOutput = { content: string };" in module
        assert 'export { readFile } from "./readFile";' in files["servers/fs/index.ts"]

    def test_deterministic(self, read_file_tool):
        gen = WrapperGenerator()
        first = gen.render([read_file_tool], Language.TYPESCRIPT)
        second = gen.render([read_file_tool], Language.TYPESCRIPT)
        assert [f.content for f in first] == [f.content for f in second]

    def test_name_collisions_get_suffix(self):
        a = _tool(name="read-file", server="fs")
        b = _tool(name="read_file", server="fs")
        funcs = [func for _, func in WrapperGenerator().plan([a, b], Language.PYTHON)["fs"]]
        assert sorted(funcs) == ["read_file", "read_file_2"]

    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcde") == 2


class TestIncrementalGeneration:
    def test_writes_then_skips(self, tmp_path, read_file_tool):
        gen = WrapperGenerator()
        first = gen.generate([read_file_tool], Language.PYTHON, tmp_path)
        assert "servers/fs/read_file.py" in first.written
        assert (tmp_path / "python" / MANIFEST_NAME).exists()

        second = gen.generate([read_file_tool], Language.PYTHON, tmp_path)
        assert second.written == []
        assert "servers/fs/read_file.py" in second.skipped

    def test_changed_and_removed(self, tmp_path, read_file_tool):
        gen = WrapperGenerator()
        other = _tool(name="search", server="docs")
        gen.generate([read_file_tool, other], Language.TYPESCRIPT, tmp_path)

        changed = read_file_tool.model_copy(update={"description": "Read a file", "content_hash": ""})
        changed = ToolDescriptor(**changed.model_dump())
        report = gen.generate([changed], Language.TYPESCRIPT, tmp_path)
        assert "servers/fs/readFile.ts" in report.written
        assert "servers/docs/search.ts" in report.deleted
        assert not (tmp_path / "typescript" / "servers" / "docs").exists()

        manifest = json.loads((tmp_path / "typescript" / MANIFEST_NAME).read_text())
        assert "servers/docs/search.ts" not in manifest["files"]

    def test_lock_held_by_live_process(self, tmp_path, read_file_tool):
        target = tmp_path / "python"
        target.mkdir()
        (target / LOCK_NAME).write_text(str(os.getpid()))
        with pytest.raises(GenerationBusy):
            WrapperGenerator().generate([read_file_tool], Language.PYTHON, tmp_path)

    def test_stale_lock_taken_over(self, tmp_path, read_file_tool):
        target = tmp_path / "python"
        target.mkdir()
        (target / LOCK_NAME).write_text("999999999")
        report = WrapperGenerator().generate([read_file_tool], Language.PYTHON, tmp_path)
        assert report.written
        assert not (target / LOCK_NAME).exists()
