"""Read-time splicing of phantom messages into host conversation data.

Phantom messages exist only locally. When a conversation is read through the
overlay they are placed in front of the host's real messages, and the real
root messages are re-parented onto the last phantom so the host UI renders
one continuous history. On the way out, a completion whose parent is the
last phantom is re-pointed to ROOT, since the host has never seen phantoms.
"""

import logging
import re
from datetime import UTC, datetime
from typing import Any
from uuid import NAMESPACE_URL, uuid5

from chatgraft.host.client import ConversationInterceptor, HostClient
from chatgraft.models import ROOT_MESSAGE_UUID, Message, from_wire, to_wire
from chatgraft.phantom.store import DEFAULT_TIMEOUT, PhantomStore

logger = logging.getLogger(__name__)

PHANTOM_MARKER = "====PHANTOM_MESSAGE===="
UUID_MARKER_PREFIX = "====UUID:"
UUID_MARKER_SUFFIX = "===="
END_ACK_TEXT = "Acknowledged - end of previous conversation."

_MARKER_RE = re.compile(
    r"(?:\n\n)?(?:" + re.escape(PHANTOM_MARKER) + r"|====UUID:[0-9a-fA-F-]+====)"
)


def strip_markers(text: str) -> str:
    """Remove phantom and uuid markers from text copied out of a conversation."""
    return _MARKER_RE.sub("", text)


def end_ack_uuid(last_phantom_uuid: str) -> str:
    """Stable uuid of the acknowledgement appended after a trailing human phantom."""
    return str(uuid5(NAMESPACE_URL, f"phantom-ack:{last_phantom_uuid}"))


def _mark_record(record: dict[str, Any], timestamp: str) -> dict[str, Any]:
    record["created_at"] = record.get("created_at") or timestamp
    record["updated_at"] = record.get("updated_at") or timestamp
    for block in record["content"]:
        block.setdefault("start_timestamp", timestamp)
        block.setdefault("stop_timestamp", timestamp)
        if not block.get("citations"):
            block["citations"] = []
        if block.get("text") is not None:
            block["text"] = block["text"] + "\n\n" + PHANTOM_MARKER
    record["text"] = "\n".join(b["text"] for b in record["content"] if b.get("type") == "text")
    return record


def _match_reference(record: dict[str, Any], reference: dict[str, Any]) -> dict[str, Any]:
    """Order keys like a real message; keys a phantom lacks take the real message's value."""
    ordered = {key: record[key] if key in record else reference[key] for key in reference}
    for key, value in record.items():
        ordered.setdefault(key, value)
    return ordered


def splice_phantoms(
    data: dict[str, Any],
    phantoms: list[Message],
    now: str | None = None,
) -> dict[str, Any]:
    """Return conversation data with phantoms placed before the real messages.

    Every phantom text block gets the phantom marker appended. Missing
    timestamps are filled in. If the last phantom is a human turn an
    assistant acknowledgement is appended so the history alternates. Real
    root messages are re-parented onto the last phantom and ``index`` is
    renumbered over the combined sequence. The input is not modified.
    """
    real = [dict(m) for m in data.get("chat_messages") or []]
    if not phantoms:
        return {**data, "chat_messages": real}

    timestamp = now or datetime.now(UTC).isoformat()
    records = [_mark_record(to_wire(m), timestamp) for m in phantoms]

    last = phantoms[-1]
    if last.sender == "human":
        ack = Message.from_text(
            END_ACK_TEXT,
            sender="assistant",
            uuid=end_ack_uuid(last.uuid),
            parent_message_uuid=last.uuid,
        )
        records.append(_mark_record(to_wire(ack), timestamp))
    last_uuid = records[-1]["uuid"]

    if real:
        records = [_match_reference(r, real[0]) for r in records]
    for record in real:
        if record.get("parent_message_uuid") == ROOT_MESSAGE_UUID:
            record["parent_message_uuid"] = last_uuid

    combined = records + real
    for i, record in enumerate(combined):
        record["index"] = i
    logger.debug("Spliced %d phantom records before %d real messages", len(records), len(real))
    return {**data, "chat_messages": combined}


def inject_uuid_markers(data: dict[str, Any]) -> dict[str, Any]:
    """Append a uuid marker to the last text block of every assistant message."""
    for record in data.get("chat_messages") or []:
        if record.get("sender") == "human":
            continue
        blocks = [b for b in record.get("content") or [] if b.get("text") is not None]
        if blocks:
            marker = f"{UUID_MARKER_PREFIX}{record['uuid']}{UUID_MARKER_SUFFIX}"
            blocks[-1]["text"] = blocks[-1]["text"] + "\n\n" + marker
    return data


def correct_completion_parent(body: dict[str, Any], phantoms: list[Message]) -> dict[str, Any]:
    """Re-point a completion parented on the phantom tail to ROOT."""
    if not phantoms:
        return body
    tail_ids = {phantoms[-1].uuid, end_ack_uuid(phantoms[-1].uuid)}
    if body.get("parent_message_uuid") in tail_ids:
        logger.info("Re-pointing completion parent from phantom tail to root")
        return {**body, "parent_message_uuid": ROOT_MESSAGE_UUID}
    return body


class PhantomOverlay(ConversationInterceptor):
    """Interceptor applying phantom splicing and completion-parent correction."""

    def __init__(
        self,
        store: PhantomStore,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        uuid_markers: bool = False,
    ) -> None:
        self.store = store
        self.timeout = timeout
        self.uuid_markers = uuid_markers

    async def on_conversation(self, conversation_id: str, data: dict[str, Any]) -> dict[str, Any]:
        phantoms = await self.store.get_with_timeout(conversation_id, self.timeout)
        if phantoms:
            data = splice_phantoms(data, phantoms)
        if self.uuid_markers:
            data = inject_uuid_markers(data)
        return data

    async def on_completion(self, conversation_id: str, body: dict[str, Any]) -> dict[str, Any]:
        phantoms = await self.store.get_with_timeout(conversation_id, self.timeout)
        return correct_completion_parent(body, phantoms or [])

    async def read(self, client: HostClient, conversation_id: str) -> list[Message]:
        """Messages of a conversation with its phantoms spliced in."""
        data = await client.get_conversation(conversation_id, tree=True)
        phantoms = await self.store.get_with_timeout(conversation_id, self.timeout)
        if phantoms:
            data = splice_phantoms(data, phantoms)
        return [from_wire(record, conversation_id) for record in data.get("chat_messages") or []]
