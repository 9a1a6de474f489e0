"""Unit tests for rebuilding conversations from JSONL logs."""
import json
import os

from core.history_loader import load_history, parse_history_lines


def _lines(*entries):
    return [e if isinstance(e, str) else json.dumps(e) for e in entries]


class TestParseHistoryLines:
    """Tests for parse_history_lines."""

    def test_skips_leading_metadata(self):
        """Should treat a first entry without role/content as metadata."""
        lines = _lines(
            {"name": "demo", "working_dir": "/tmp", "description": "x"},
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        )
        messages = parse_history_lines(lines, session_name="demo")
        assert [m["role"] for m in messages] == ["user", "assistant"]
        assert messages[0]["session_name"] == "demo"

    def test_one_malformed_line_among_n(self):
        """Should yield exactly N messages when one line is invalid JSON."""
        lines = _lines(
            {"role": "user", "content": "one"},
            "{not json",
            {"role": "assistant", "content": "two"},
            {"role": "user", "content": "three"},
        )
        messages = parse_history_lines(lines)
        assert [m["content"] for m in messages] == ["one", "two", "three"]

    def test_skips_entries_without_role_or_content(self):
        """Should skip later entries that lack a role or content."""
        lines = _lines(
            {"role": "user", "content": "kept"},
            {"content": "no role"},
            {"role": "tool", "content": "unknown role"},
            {"role": "assistant"},
            [1, 2, 3],
        )
        assert [m["content"] for m in parse_history_lines(lines)] == ["kept"]

    def test_flattens_text_fragments(self):
        """Should newline-join only text fragments, in order."""
        lines = _lines(
            {
                "role": "assistant",
                "content": [
                    {"type": "text", "text": "first"},
                    {"type": "toolRequest", "id": "x"},
                    {"type": "text", "text": "second"},
                ],
            }
        )
        assert parse_history_lines(lines)[0]["content"] == "first\nsecond"

    def test_skips_fragment_lists_without_text(self):
        """Should drop entries whose fragments carry no text."""
        lines = _lines({"role": "assistant", "content": [{"type": "toolResponse"}]})
        assert parse_history_lines(lines) == []

    def test_timestamp_from_created(self):
        """Should derive the timestamp from the numeric creation time."""
        lines = _lines({"role": "user", "content": "hi", "created": 0})
        stamp = parse_history_lines(lines)[0]["timestamp"]
        assert stamp.startswith("19")

    def test_timestamp_defaults_to_now(self):
        """Should fall back to the current time."""
        lines = _lines({"role": "user", "content": "hi"})
        assert parse_history_lines(lines)[0]["timestamp"]

    def test_source_defaults_to_history(self):
        """Should tag messages without a source as history."""
        lines = _lines({"role": "user", "content": "hi"}, {"role": "assistant", "content": "yo", "source": "stream"})
        assert [m["source"] for m in parse_history_lines(lines)] == ["history", "stream"]


class TestLoadHistory:
    """Tests for load_history."""

    def test_missing_file_returns_empty(self, temp_dir):
        """Should return an empty list for a missing log."""
        assert load_history(os.path.join(temp_dir, "nope.jsonl")) == []

    def test_reads_file(self, temp_dir):
        """Should read and parse a log from disk."""
        path = os.path.join(temp_dir, "demo.jsonl")
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(json.dumps({"name": "demo"}) + "\n")
            handle.write(json.dumps({"role": "user", "content": "hi"}) + "\n")
            handle.write("\n")
        messages = load_history(path, session_name="demo")
        assert len(messages) == 1
        assert messages[0]["content"] == "hi"
