"""Tests for raw host JSON, JSONL export and import format detection."""

import json

import pytest

from chatgraft.codecs.detection import detect_import_format, detect_json_format
from chatgraft.codecs.jsonl import format_jsonl
from chatgraft.codecs.raw import BRANCH_WARNING, format_raw, parse_raw
from chatgraft.models import MalformedInputError
from chatgraft.tree.paths import BrokenChainError
from tests.fixtures import make_chain, make_conversation_data, make_message, timestamp


class TestRawFormat:
    def test_format_is_pretty_json(self):
        data = make_conversation_data(make_chain(["hi"]))
        text = format_raw(data)
        assert text.startswith('{\n  "uuid"')
        assert json.loads(text) == data

    def test_parse_linear(self):
        chain = make_chain(["hi", "hello"])
        imported = parse_raw(make_conversation_data(chain, name="Raw chat"))
        assert imported.name == "Raw chat"
        assert imported.source_format == "raw"
        assert imported.model == "claude-sonnet-4-5-20250929"
        assert [m.uuid for m in imported.messages] == [m.uuid for m in chain]
        assert imported.warnings == []

    def test_parse_branching_uses_current_leaf(self):
        h1 = make_message("h1", uuid="h1", created_at=timestamp(0))
        a1 = make_message("a1", "assistant", uuid="a1", parent="h1", created_at=timestamp(1))
        a2 = make_message("a2", "assistant", uuid="a2", parent="h1", created_at=timestamp(2))
        h2 = make_message("h2", uuid="h2", parent="a2", created_at=timestamp(3))
        imported = parse_raw(make_conversation_data([h1, a1, a2, h2], current_leaf="a1"))

        assert [m.uuid for m in imported.messages] == ["h1", "a1"]
        assert imported.warnings == [BRANCH_WARNING]

    def test_parse_without_current_leaf_takes_deepest(self):
        h1 = make_message("h1", uuid="h1", created_at=timestamp(0))
        a1 = make_message("a1", "assistant", uuid="a1", parent="h1", created_at=timestamp(1))
        a2 = make_message("a2", "assistant", uuid="a2", parent="h1", created_at=timestamp(2))
        h2 = make_message("h2", uuid="h2", parent="a2", created_at=timestamp(3))
        data = make_conversation_data([h1, a1, a2, h2])
        data["current_leaf_message_uuid"] = None
        assert [m.uuid for m in parse_raw(data).messages] == ["h1", "a2", "h2"]

    def test_missing_array(self):
        with pytest.raises(MalformedInputError):
            parse_raw({"name": "x"})

    def test_empty_array(self):
        with pytest.raises(MalformedInputError):
            parse_raw({"chat_messages": []})

    def test_dangling_parent(self):
        orphan = make_message("x", uuid="x", parent="gone")
        with pytest.raises(BrokenChainError):
            parse_raw(make_conversation_data([orphan], current_leaf="x"))


class TestJsonl:
    def test_one_line_per_message(self):
        messages = make_chain(["hi", "hello"])
        lines = format_jsonl(messages).split("\n")
        assert [json.loads(line) for line in lines] == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ]

    def test_content_includes_tool_input(self):
        message = make_message(sender="assistant", content=[
            {"type": "text", "text": "looking"},
            {"type": "tool_use", "name": "s", "input": {"q": "x"}},
        ])
        assert json.loads(format_jsonl([message]))["content"] == 'looking\n{"q":"x"}'

    def test_non_ascii_kept(self):
        assert "héllo" in format_jsonl([make_message("héllo")])


class TestDetection:
    def test_json_shapes(self):
        assert detect_json_format({"chat_messages": []}) == "raw"
        assert detect_json_format({"messages": []}) == "librechat"
        with pytest.raises(MalformedInputError):
            detect_json_format({"other": 1})
        with pytest.raises(MalformedInputError):
            detect_json_format([])

    def test_by_name_and_magic(self):
        assert detect_import_format(b"PK\x03\x04rest", "export") == "zip"
        assert detect_import_format(b"", "bundle.zip") == "zip"
        assert detect_import_format(b'{"chat_messages": []}', "chat.json") == "raw"
        assert detect_import_format(b'{"messages": []}', "chat.JSON") == "librechat"
        assert detect_import_format(b"[CLEXP:User]", "chat.txt") == "txt"
        assert detect_import_format(b"[CLEXP:User]", "no-extension") == "txt"

    def test_jsonl_rejected(self):
        with pytest.raises(MalformedInputError, match="JSONL"):
            detect_import_format(b'{"role": "user"}', "chat.jsonl")

    def test_invalid_json(self):
        with pytest.raises(MalformedInputError, match="chat.json"):
            detect_import_format(b"{broken", "chat.json")
