"""Tests for the relevance scorer."""

from mcpx.core.models import ToolDescriptor
from mcpx.discovery.scorer import (
    description_phrases,
    extract_keywords,
    name_contribution,
    normalize,
    rank,
    score,
)


def _tool(name, description="", server="s", category="", keywords=()):
    return ToolDescriptor(
        name=name, server=server, description=description, category=category, keywords=list(keywords)
    )


class TestTextHelpers:
    def test_normalize_splits_camel_case(self):
        assert normalize("readFile_now!") == "read file now"

    def test_extract_keywords_drops_stop_words(self):
        assert extract_keywords("Read the file at /data/notes.txt") == ["read", "file", "data", "notes", "txt"]

    def test_description_phrases_stay_in_clause(self):
        phrases = description_phrases("Read files. Write logs")
        assert "read files" in phrases
        assert "files write" not in phrases


class TestNameContribution:
    def test_whole_word(self):
        assert name_contribution("please call read_file now", "read_file") == 1.0

    def test_camel_case_words(self):
        assert name_contribution("get weather for Paris", "getWeather") == 1.0

    def test_substring(self):
        assert name_contribution("use the mysearch_tool", "search") == 0.8

    def test_none(self):
        assert name_contribution("list issues", "read_file") == 0.0


class TestScore:
    def test_clamped_to_one(self):
        tool = _tool("read_file", "Read the file at the given path", keywords=["read", "file"])
        value, name_part = score("read_file: read the file /data/notes.txt", tool)
        assert value == 1.0
        assert name_part == 1.0

    def test_phrase_and_overlap(self):
        tool = _tool("fetch", "Download a web page")
        value, _ = score("download a web page for me", tool)
        # phrase 0.5 + overlap (download, web, page) 0.9, clamped
        assert value == 1.0

    def test_single_keyword_overlap(self):
        tool = _tool("list_issues", "List open issues of a repository")
        value, _ = score("how many repository stars", tool)
        assert value == 0.3

    def test_category_bonus(self):
        tool = _tool("x", "nothing relevant", category="weather")
        value, _ = score("weather", tool)
        # keyword overlap is empty because "weather" is not in name/description
        assert value == 0.2

    def test_irrelevant(self):
        assert score("book a flight", _tool("read_file", "Read a file"))[0] == 0.0

    def test_read_file_intent(self, read_file_tool):
        value, name_part = score("read the file /data/notes.txt", read_file_tool)
        # phrase "read the file" 0.5 + overlap (read, file) 0.6, clamped
        assert value >= 0.8
        assert name_part == 0.0


class TestRank:
    def test_threshold_and_order(self):
        tools = [
            _tool("read_file", "Read the file at the given path"),
            _tool("write_file", "Write a file"),
            _tool("send_email", "Send an email"),
        ]
        result = rank("read the file /tmp/a.txt", tools, limit=5, threshold=0.3)
        names = [t.name for t in result.tools]
        assert names[0] == "read_file"
        assert "send_email" not in names
        scores = [e.score for e in result.entries]
        assert scores == sorted(scores, reverse=True)

    def test_limit(self):
        tools = [_tool(f"file_tool_{i}", "file helper") for i in range(10)]
        assert len(rank("file", tools, limit=3, threshold=0.1)) == 3

    def test_ties_broken_by_server_and_name(self):
        tools = [_tool("b", "file helper", server="z"), _tool("a", "file helper", server="z"),
                 _tool("c", "file helper", server="a")]
        result = rank("file", tools, limit=5, threshold=0.1)
        assert [t.fqn for t in result.tools] == ["a.c", "z.a", "z.b"]

    def test_exact_name_breaks_score_tie(self):
        by_name = _tool("notes", "")
        by_words = _tool("other", "notes archive", keywords=["notes"])
        result = rank("notes archive", [by_words, by_name], limit=5, threshold=0.1)
        assert result.entries[0].descriptor.name == "notes"
