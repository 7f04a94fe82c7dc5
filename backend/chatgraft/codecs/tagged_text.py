"""Tagged-text conversation format.

A ``Title:``/``Date:`` header, then one section per message::

    [CLEXP:User:1718000000000]
    [CLEXP:content-text]
    hello

    [CLEXP:content-tool_use]
    {"type": "tool_use", ...}

    [CLEXP:files_v2]
    [...]

Role tags carry an optional epoch-milliseconds timestamp. Text blocks are
written as-is; every other block and the file arrays as JSON.
"""

import json
import re
from datetime import UTC, datetime
from typing import Any

from chatgraft.codecs.models import DEFAULT_IMPORT_NAME, ImportedConversation
from chatgraft.models import MalformedInputError, Message, from_wire, parse_timestamp, to_wire

TAG_PREFIX = "CLEXP:"
ROLE_TAGS = {"human": "User", "assistant": "Assistant"}
TAG_SENDERS = {tag: sender for sender, tag in ROLE_TAGS.items()}
FILE_ARRAY_TAGS = ("files_v2", "attachments")

TAG_RE = re.compile(r"^\[" + re.escape(TAG_PREFIX) + r"([\da-zA-Z_-]+)(?::(\d+))?\]$")
TITLE_RE = re.compile(r"^Title: (.+)", re.MULTILINE)


def _tag(name: str, timestamp_ms: int | None = None) -> str:
    suffix = f":{timestamp_ms}" if timestamp_ms is not None else ""
    return f"[{TAG_PREFIX}{name}{suffix}]\n"


def _epoch_ms(message: Message) -> int | None:
    parsed = parse_timestamp(message.created_at or message.updated_at)
    return int(parsed.timestamp() * 1000) if parsed else None


def format_tagged_text(name: str, date: str | None, messages: list[Message]) -> str:
    """Serialize a linear branch as tagged text."""
    out = [f"Title: {name}\nDate: {date or ''}\n\n"]
    for message in messages:
        out.append(_tag(ROLE_TAGS[message.sender], _epoch_ms(message)))
        for block in message.content:
            if block.type == "text":
                out.append(f"{_tag('content-text')}{block.text or ''}\n\n")
            else:
                out.append(f"{_tag('content-' + block.type)}{json.dumps(block.to_dict())}\n\n")

        record = to_wire(message)
        for key in FILE_ARRAY_TAGS:
            if record[key]:
                out.append(f"{_tag(key)}{json.dumps(record[key])}\n\n")
    return "".join(out)


class _TaggedTextParser:
    """Line-by-line reader building one wire record per role section."""

    def __init__(self) -> None:
        self.records: list[dict[str, Any]] = []
        self.warnings: list[str] = []
        self.current: dict[str, Any] | None = None
        self.tag: str | None = None
        self.buffer: list[str] = []

    def _json(self, text: str) -> Any:
        try:
            return json.loads(text.strip())
        except json.JSONDecodeError as e:
            raise MalformedInputError(f"Failed to parse [{self.tag}] block: {e}") from e

    def flush(self) -> None:
        text = "\n".join(self.buffer)
        self.buffer = []
        if not text.strip() or self.tag is None or self.current is None:
            return

        if self.tag.startswith("content-"):
            block_type = self.tag.removeprefix("content-")
            if block_type == "text":
                self.current["content"].append({"type": "text", "text": text.strip()})
                return
            block = self._json(text)
            if not isinstance(block, dict):
                raise MalformedInputError(f"[{self.tag}] block must be a JSON object")
            block.setdefault("type", block_type)
            self.current["content"].append(block)
        elif self.tag in FILE_ARRAY_TAGS:
            value = self._json(text)
            if not isinstance(value, list):
                raise MalformedInputError(f"[{self.tag}] block must be a JSON array")
            self.current[self.tag] = value
        else:
            self.warnings.append(f"Ignoring unknown [{self.tag}] block")

    def start_message(self, role_tag: str, timestamp_ms: str | None) -> None:
        sender = TAG_SENDERS[role_tag]
        if self.current is not None and self.current["sender"] == sender:
            raise MalformedInputError(f"Consecutive [{role_tag}] blocks not allowed")
        if self.current is not None:
            self.records.append(self.current)
        self.current = {
            "sender": sender,
            "content": [],
            "files_v2": [],
            "attachments": [],
            "sync_sources": [],
        }
        if timestamp_ms:
            self.current["created_at"] = datetime.fromtimestamp(int(timestamp_ms) / 1000, UTC).isoformat()
        self.tag = None

    def feed(self, line: str) -> None:
        match = TAG_RE.match(line)
        if match is None:
            self.buffer.append(line)
            return
        self.flush()
        name, timestamp_ms = match.groups()
        if name in TAG_SENDERS:
            self.start_message(name, timestamp_ms)
            return
        if self.current is None:
            raise MalformedInputError(f"Found [{name}] before any message role")
        self.tag = name

    def finish(self) -> list[dict[str, Any]]:
        self.flush()
        if self.current is not None:
            self.records.append(self.current)
        return self.records


def parse_tagged_text(text: str) -> ImportedConversation:
    """Parse tagged text into a linear conversation.

    Raises MalformedInputError when no tags are present, when two role
    sections of the same sender follow each other, when a content tag
    precedes every role tag, when a JSON block is invalid, or when the
    conversation does not start with a human turn.
    """
    title_match = TITLE_RE.search(text)
    name = title_match.group(1).strip() if title_match else DEFAULT_IMPORT_NAME

    lines = text.split("\n")
    start = next((i for i, line in enumerate(lines) if TAG_RE.match(line)), None)
    if start is None:
        raise MalformedInputError("No messages found in file")

    parser = _TaggedTextParser()
    for line in lines[start:]:
        parser.feed(line)
    records = parser.finish()

    if not records:
        raise MalformedInputError("No messages found in file")
    if records[0]["sender"] != "human":
        raise MalformedInputError("Conversation must start with a User message")

    messages = [from_wire(record) for record in records]
    return ImportedConversation(
        name=name,
        source_format="txt",
        messages=messages,
        warnings=parser.warnings,
    )
