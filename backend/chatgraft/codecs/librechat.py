"""LibreChat conversation JSON.

Exported messages are flat, linked by ``parentMessageId``. Text attachments
go into each message's ``files`` array and, for human turns, are also
embedded in the message text between attachment delimiters so a LibreChat
model can read them. Import accepts both the flat form and the
``recursive`` form with nested ``children``, and strips the delimiters back
out.
"""

import re
from typing import Any
from uuid import uuid4

from chatgraft.codecs.models import DEFAULT_IMPORT_NAME, ImportedConversation
from chatgraft.models import (
    ROOT_MESSAGE_UUID,
    ContentBlock,
    InlineAttachment,
    MalformedInputError,
    Message,
    extract_text,
    to_wire,
)
from chatgraft.utils.json import dumps_pretty

LIBRECHAT_SENDERS = {"human": "User", "assistant": "Claude"}
# LibreChat's own "no parent" id
NO_PARENT = "00000000-0000-0000-0000-000000000000"
PLACEHOLDER_TEXT = "[Conversation imported from LibreChat]"

ATTACHMENT_DELIMITER_RE = re.compile(
    r"\n*=====ATTACHMENT_BEGIN: .+?=====\n[\s\S]*?\n=====ATTACHMENT_END====="
)


def _embed_attachment(file_name: str, text: str) -> str:
    return f"\n=====ATTACHMENT_BEGIN: {file_name}=====\n{text}\n=====ATTACHMENT_END=====\n\n"


def _export_message(message: Message) -> dict[str, Any]:
    text = ""
    files = []
    for attachment in to_wire(message)["attachments"]:
        body = attachment.get("extracted_content") or ""
        file_name = attachment.get("file_name") or "unknown"
        files.append({
            "file_id": str(uuid4()),
            "bytes": attachment.get("file_size") or len(body),
            "context": "message_attachment",
            "filename": file_name,
            "object": "file",
            "source": "text",
            "text": body,
            "type": attachment.get("file_type") or "text/plain",
        })
        if body and message.sender == "human":
            text += _embed_attachment(file_name, body)
    text += extract_text(message)

    record: dict[str, Any] = {
        "messageId": message.uuid,
        "parentMessageId": (
            None if message.parent_message_uuid == ROOT_MESSAGE_UUID else message.parent_message_uuid
        ),
        "text": text,
        "sender": LIBRECHAT_SENDERS[message.sender],
        "isCreatedByUser": message.sender == "human",
        "createdAt": message.created_at,
    }
    if files:
        record["files"] = files
    return record


def format_librechat(name: str, conversation_id: str, model: str, messages: list[Message]) -> str:
    return dumps_pretty({
        "title": name,
        "endpoint": "anthropic",
        "conversationId": conversation_id,
        "options": {"model": model},
        "messages": [_export_message(m) for m in messages],
    })


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


def linear_branch(records: list[dict[str, Any]], warnings: list[str]) -> list[dict[str, Any]]:
    """Path from the root to the last record of a flat message list."""
    by_id = {r.get("messageId"): r for r in records}
    branch: list[dict[str, Any]] = []
    seen: set[int] = set()
    current: dict[str, Any] | None = records[-1]
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        branch.append(current)
        parent_id = current.get("parentMessageId")
        if not parent_id or parent_id == NO_PARENT:
            break
        current = by_id.get(parent_id)
        if current is None:
            warnings.append(f"Parent message {parent_id} not found; branch starts after it.")
    branch.reverse()
    return branch


def rightmost_branch(records: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Follow the last child at every level, starting from the last root."""
    branch: list[dict[str, Any]] = []
    current: dict[str, Any] | None = records[-1]
    while current is not None:
        branch.append(current)
        children = current.get("children") or []
        current = children[-1] if children else None
    return branch


def _strip_delimiters(text: str | None) -> str:
    return ATTACHMENT_DELIMITER_RE.sub("", text or "").strip()


def _import_content(record: dict[str, Any]) -> list[ContentBlock]:
    blocks = record.get("content")
    if not isinstance(blocks, list) or not blocks:
        return [ContentBlock(type="text", text=_strip_delimiters(record.get("text")))]

    content = []
    for block in blocks:
        if not isinstance(block, dict) or not block.get("type"):
            raise MalformedInputError(f"Invalid content block in message {record.get('messageId')}")
        if block.get("type") == "think":
            content.append(ContentBlock(type="thinking", thinking=block.get("think") or ""))
        elif block.get("type") == "text":
            content.append(ContentBlock(type="text", text=_strip_delimiters(block.get("text"))))
        else:
            content.append(ContentBlock.model_validate(block))
    return content


def _import_files(record: dict[str, Any]) -> list[InlineAttachment]:
    attachments = []
    for f in record.get("files") or []:
        if not isinstance(f, dict) or not f.get("text"):
            continue
        attachments.append(InlineAttachment(
            file_name=f.get("filename") or "unknown",
            file_size=f.get("bytes") or len(f["text"]),
            file_type=f.get("type") or "text/plain",
            extracted_content=f["text"],
        ))
    return attachments


def parse_librechat(data: Any) -> ImportedConversation:
    """Parse a LibreChat export into the single branch it shows last.

    Raises MalformedInputError when the document has no messages.
    """
    if not isinstance(data, dict):
        raise MalformedInputError("Invalid LibreChat format: expected an object")
    records = data.get("messages")
    if not isinstance(records, list) or not records:
        raise MalformedInputError("Invalid LibreChat format: missing or empty messages array")

    warnings: list[str] = []
    if data.get("branches"):
        warnings.append("Multiple branches detected. Importing rightmost branch.")

    branch = rightmost_branch(records) if data.get("recursive") else linear_branch(records, warnings)
    if not branch:
        raise MalformedInputError("No messages found in file")

    messages = [
        Message(
            sender="human" if r.get("isCreatedByUser") else "assistant",
            content=_import_content(r),
            files=_import_files(r),
            created_at=r.get("createdAt"),
        )
        for r in branch
    ]

    if messages[0].sender != "human":
        warnings.append("Conversation did not start with a user message. A placeholder was added.")
        messages.insert(0, Message.from_text(PLACEHOLDER_TEXT, created_at=messages[0].created_at))

    options = data.get("options") or {}
    return ImportedConversation(
        name=data.get("title") or DEFAULT_IMPORT_NAME,
        source_format="librechat",
        messages=messages,
        model=options.get("model") if isinstance(options, dict) else None,
        warnings=warnings,
    )
