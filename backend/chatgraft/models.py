"""Canonical message and file models.

A Message mirrors one record of the host's ``chat_messages`` array. The
files attached to a message are one of three variants; on the wire they are
told apart by shape alone (see ``parse_file``), in memory by type.
"""

import json
from datetime import UTC, datetime
from typing import Annotated, Any, ClassVar, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, ValidationError

# Parent pointer of every root-level message
ROOT_MESSAGE_UUID = "00000000-0000-4000-8000-000000000000"

# Sandbox files with at most this many characters of text travel inline
INLINE_THRESHOLD = 15_000

CHATLOG_BLOCK_TYPES = ("text", "tool_use", "tool_result")
TOOL_BLOCK_TYPES = ("tool_use", "tool_result")

Sender = Literal["human", "assistant"]


class InvalidTurnError(Exception):
    """Raised when a message cannot be sent as a completion turn."""


class MalformedInputError(Exception):
    """Raised when external data (a wire record or an imported file) cannot be parsed."""


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


class ContentBlock(BaseModel):
    """One typed block of message content.

    Only ``type`` and ``text`` are modelled; every other key (tool input,
    citations, thinking signatures, ...) is kept as an extra and written back
    untouched.
    """

    model_config = ConfigDict(extra="allow")

    type: str
    text: str | None = None

    def get(self, key: str, default: Any = None) -> Any:
        if key in type(self).model_fields:
            return getattr(self, key)
        return (self.model_extra or {}).get(key, default)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)


# ---------------------------------------------------------------------------
# File variants
# ---------------------------------------------------------------------------


class HostedFile(BaseModel):
    """A binary file stored in the host's file store."""

    model_config = ConfigDict(frozen=True)
    variant: ClassVar[str] = "hosted"

    file_uuid: str
    file_name: str = ""
    file_kind: str | None = None
    preview_asset: dict[str, Any] | None = None
    document_asset: dict[str, Any] | None = None
    thumbnail_asset: dict[str, Any] | None = None
    preview_url: str | None = None
    thumbnail_url: str | None = None
    created_at: str | None = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class SandboxFile(BaseModel):
    """A file living at a path inside a conversation's code-execution sandbox."""

    model_config = ConfigDict(frozen=True)
    variant: ClassVar[str] = "sandbox"

    path: str
    file_uuid: str | None = None
    file_name: str = ""
    sanitized_name: str | None = None
    size_bytes: int | None = None
    file_kind: str | None = None
    created_at: str | None = None
    extracted_content: str | None = None
    # Never written to the wire
    keep_as_file: bool = Field(default=False, exclude=True)
    conversation_id: str | None = Field(default=None, exclude=True)

    @property
    def inlines(self) -> bool:
        """Whether this file is serialized into the inline attachments array."""
        return (
            not self.keep_as_file
            and self.extracted_content is not None
            and len(self.extracted_content) <= INLINE_THRESHOLD
        )

    def to_wire(self) -> dict[str, Any]:
        record = self.model_dump(mode="json", exclude_none=True)
        if self.inlines:
            record["file_size"] = len(self.extracted_content or "")
            record["file_type"] = "text/plain"
        return record


class InlineAttachment(BaseModel):
    """Extracted text carried directly in the message body."""

    model_config = ConfigDict(frozen=True)
    variant: ClassVar[str] = "inline"

    file_name: str = ""
    file_size: int | None = None
    file_type: str = "text/plain"
    extracted_content: str = ""

    @classmethod
    def from_text(cls, text: str, file_name: str) -> "InlineAttachment":
        return cls(
            file_name=file_name,
            file_size=len(text),
            file_type="text/plain",
            extracted_content=text,
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


def detect_file_variant(record: dict[str, Any]) -> str | None:
    """Classify a wire file record: sandbox, inline, hosted, or None."""
    if "path" in record:
        return "sandbox"
    if "extracted_content" in record:
        return "inline"
    if "file_uuid" in record:
        return "hosted"
    return None


def _file_discriminator(value: Any) -> str | None:
    if isinstance(value, dict):
        return detect_file_variant(value)
    return getattr(value, "variant", None)


FileRef = Annotated[
    Annotated[HostedFile, Tag("hosted")]
    | Annotated[SandboxFile, Tag("sandbox")]
    | Annotated[InlineAttachment, Tag("inline")],
    Discriminator(_file_discriminator),
]

_FILE_TYPES: dict[str, type[BaseModel]] = {
    "hosted": HostedFile,
    "sandbox": SandboxFile,
    "inline": InlineAttachment,
}


def parse_file(record: Any, conversation_id: str | None = None) -> HostedFile | SandboxFile | InlineAttachment:
    """Build the file variant matching a wire record's shape.

    ``conversation_id`` is remembered on sandbox files so they can be
    downloaded later. Raises MalformedInputError for unrecognized shapes.
    """
    if not isinstance(record, dict):
        raise MalformedInputError(f"File record must be an object, got {type(record).__name__}")
    variant = detect_file_variant(record)
    if variant is None:
        raise MalformedInputError(f"Unrecognized file record with keys {sorted(record)}")
    data = dict(record)
    if variant == "sandbox":
        data["conversation_id"] = conversation_id
    try:
        return _FILE_TYPES[variant].model_validate(data)
    except ValidationError as e:
        raise MalformedInputError(f"Invalid {variant} file record: {e}") from e


def dedupe_by_filename(files: list) -> list:
    """Drop files sharing a name with a later file. Unnamed files are dropped."""
    seen: dict[str, Any] = {}
    for f in reversed(files):
        if f.file_name and f.file_name not in seen:
            seen[f.file_name] = f
    return list(reversed(list(seen.values())))


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------


class Message(BaseModel):
    """One turn of a conversation, as stored by the host."""

    uuid: str = Field(default_factory=lambda: str(uuid4()))
    parent_message_uuid: str = ROOT_MESSAGE_UUID
    sender: Sender = "human"
    index: int = 0
    content: list[ContentBlock] = Field(default_factory=list)
    files: list[FileRef] = Field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None
    truncated: bool = False
    sync_sources: list[dict[str, Any]] = Field(default_factory=list)
    # Only sent with completion requests
    model: str | None = None

    @classmethod
    def from_text(cls, text: str, sender: Sender = "human", **fields: Any) -> "Message":
        """Build a message whose content is a single text block."""
        return cls(sender=sender, content=[ContentBlock(type="text", text=text)], **fields)

    @property
    def text(self) -> str:
        return text_of(self)

    @property
    def tool_calls(self) -> list[ContentBlock]:
        return [b for b in self.content if b.type in TOOL_BLOCK_TYPES]

    @property
    def inline_attachments(self) -> list[InlineAttachment]:
        return [f for f in self.files if isinstance(f, InlineAttachment)]

    @property
    def stored_files(self) -> list[HostedFile | SandboxFile]:
        """Hosted and sandbox files: everything that is not an inline attachment."""
        return [f for f in self.files if not isinstance(f, InlineAttachment)]


def text_of(message: Message) -> str:
    """Newline-join the text of every text block."""
    return "\n".join(b.text or "" for b in message.content if b.type == "text")


def extract_text(message: Message) -> str:
    """Collect every text-bearing field of a message's content.

    Includes text blocks, JSON-encoded tool inputs and the nested content of
    tool results, newline-joined in document order.
    """
    pieces: list[str] = []

    def collect(node: Any) -> None:
        if not isinstance(node, dict):
            return
        if node.get("text"):
            pieces.append(node["text"])
        if node.get("input"):
            pieces.append(json.dumps(node["input"], separators=(",", ":")))
        nested = node.get("content")
        if isinstance(nested, list):
            for item in nested:
                collect(item)
        elif isinstance(nested, dict):
            collect(nested)

    for block in message.content:
        collect(block.to_dict())
    return "\n".join(pieces)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO 8601 timestamp, returning None when absent or invalid."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# Wire conversions
# ---------------------------------------------------------------------------


def _partition_files(message: Message) -> tuple[list[dict], list[dict], list[str]]:
    """Split a message's files into (files_v2, attachments, legacy image uuids)."""
    files_v2: list[dict] = []
    attachments: list[dict] = []
    legacy: list[str] = []
    for f in message.files:
        if isinstance(f, InlineAttachment):
            attachments.append(f.to_wire())
        elif isinstance(f, SandboxFile):
            if f.inlines:
                attachments.append(f.to_wire())
            else:
                files_v2.append(f.to_wire())
        elif isinstance(f, HostedFile):
            files_v2.append(f.to_wire())
            if f.file_kind == "image":
                legacy.append(f.file_uuid)
        else:
            raise TypeError(f"Unknown file variant: {type(f).__name__}")
    return files_v2, attachments, legacy


def to_wire(message: Message) -> dict[str, Any]:
    """Serialize a message into the host's history record shape."""
    files_v2, attachments, legacy = _partition_files(message)
    return {
        "uuid": message.uuid,
        "text": text_of(message),
        "content": [b.to_dict() for b in message.content],
        "sender": message.sender,
        "index": message.index,
        "created_at": message.created_at,
        "updated_at": message.updated_at,
        "truncated": message.truncated,
        "attachments": attachments,
        "files": legacy,
        "files_v2": files_v2,
        "sync_sources": message.sync_sources,
        "parent_message_uuid": message.parent_message_uuid,
    }


def from_wire(record: dict[str, Any], conversation_id: str | None = None) -> Message:
    """Parse a host history record into a Message.

    Sandbox files found in ``files_v2`` although small enough to inline are
    marked ``keep_as_file`` so they serialize back to the same array.
    """
    if not isinstance(record, dict):
        raise MalformedInputError("Message record must be an object")

    files: list = []
    for raw in record.get("files_v2") or []:
        f = parse_file(raw, conversation_id)
        if isinstance(f, SandboxFile) and f.inlines:
            f = f.model_copy(update={"keep_as_file": True})
        files.append(f)
    for raw in record.get("attachments") or []:
        files.append(parse_file(raw, conversation_id))

    content = record.get("content") or []
    if not content and record.get("text"):
        content = [{"type": "text", "text": record["text"]}]

    try:
        return Message(
            uuid=record.get("uuid") or str(uuid4()),
            parent_message_uuid=record.get("parent_message_uuid") or ROOT_MESSAGE_UUID,
            sender=record.get("sender"),
            index=record.get("index") or 0,
            content=content,
            files=files,
            created_at=record.get("created_at"),
            updated_at=record.get("updated_at"),
            truncated=bool(record.get("truncated", False)),
            sync_sources=record.get("sync_sources") or [],
        )
    except ValidationError as e:
        raise MalformedInputError(f"Invalid message record {record.get('uuid')}: {e}") from e


def to_completion_request(
    message: Message,
    *,
    timezone: str = "UTC",
    locale: str = "en-US",
    tools: list[dict] | None = None,
    personalized_styles: list[dict] | None = None,
) -> dict[str, Any]:
    """Build the completion request body for sending a human turn."""
    if message.sender != "human":
        raise InvalidTurnError("Only human messages can be sent as a completion turn")
    text_blocks = [b for b in message.content if b.type == "text"]
    if not text_blocks:
        raise InvalidTurnError("Completion turn has no text block")
    if len(text_blocks) > 1:
        raise InvalidTurnError("Completion turn has more than one text block")

    _, attachments, _ = _partition_files(message)
    file_uuids = [
        f.file_uuid
        for f in message.stored_files
        if f.file_uuid and not (isinstance(f, SandboxFile) and f.inlines)
    ]
    body: dict[str, Any] = {
        "prompt": text_blocks[0].text or "",
        "parent_message_uuid": message.parent_message_uuid,
        "timezone": timezone,
        "personalized_styles": personalized_styles or [],
        "locale": locale,
        "tools": tools or [],
        "attachments": attachments,
        "files": file_uuids,
        "sync_sources": message.sync_sources,
        "rendering_mode": "messages",
    }
    if message.model:
        body["model"] = message.model
    return body


def to_chatlog(message: Message) -> str:
    """Render a message as plain text for a chatlog.

    Keeps text, tool_use and tool_result blocks (tool blocks as JSON), then
    appends the stored-file and attachment arrays as JSON. No other
    filtering is applied.
    """
    parts: list[str] = []
    for block in message.content:
        if block.type not in CHATLOG_BLOCK_TYPES:
            continue
        if block.type == "text":
            parts.append(block.text or "")
        else:
            parts.append(json.dumps(block.to_dict()))

    files_v2, attachments, _ = _partition_files(message)
    if files_v2:
        parts.append(json.dumps(files_v2))
    if attachments:
        parts.append(json.dumps(attachments))
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Copy helpers
# ---------------------------------------------------------------------------


def strip_tool_calls(message: Message) -> Message:
    """Copy of a message without tool_use/tool_result blocks."""
    return message.model_copy(
        update={"content": [b for b in message.content if b.type not in TOOL_BLOCK_TYPES]}
    )


def without_files(message: Message, keep: Any = None) -> Message:
    """Copy of a message with its files removed.

    ``keep`` is an optional predicate selecting files to retain.
    """
    kept = [f for f in message.files if keep is not None and keep(f)]
    return message.model_copy(update={"files": kept})
