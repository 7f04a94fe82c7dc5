"""Token-bounded partitioning of a message sequence for chunked summarization.

Chunks are computed from the end backwards: the most recent stretch of the
conversation gets its own, smaller chunk so recent detail survives
summarization, and everything before it is split into roughly equal front
chunks. Every chunk except possibly the first starts on a human turn.
"""

import logging
import math
import os
from uuid import uuid4

from chatgraft.chunking.tokens import estimate_tokens, take_from_end
from chatgraft.models import InlineAttachment, Message
from chatgraft.tree.alternation import ACK_TEXT, CONTINUATION_TEXT

logger = logging.getLogger(__name__)

LAST_CHUNK_SIZE = 15_000
MAIN_TARGET_CHUNK = 30_000

# Alignment may push a chunk past its target; beyond this factor it is logged
DRIFT_WARNING_FACTOR = 2


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _align_to_human(remaining: list[Message], take_count: int) -> int:
    """Grow ``take_count`` until the tail it selects starts on a human turn."""
    while take_count < len(remaining) and remaining[len(remaining) - take_count].sender != "human":
        take_count += 1
    return min(take_count, len(remaining))


def _warn_on_drift(chunk: list[Message], target: int) -> None:
    tokens = estimate_tokens(chunk)
    if tokens > DRIFT_WARNING_FACTOR * target:
        logger.warning(
            "Chunk of %d messages is %d tokens after human-turn alignment (target %d)",
            len(chunk), tokens, target,
        )


def partition_into_chunks(messages: list[Message]) -> list[list[Message]]:
    """Split a message sequence into summarization chunks.

    Below 2 * LAST_CHUNK_SIZE tokens the whole sequence is one chunk.
    Otherwise a greedy last chunk of about LAST_CHUNK_SIZE tokens is peeled
    off the end, then max(1, round(rest / MAIN_TARGET_CHUNK)) front chunks of
    about equal size, each conservatively sized and aligned to start on a
    human turn. The earliest front chunk takes whatever is left. Chunk order
    follows the conversation.
    """
    total = estimate_tokens(messages)
    if total < 2 * LAST_CHUNK_SIZE:
        return [list(messages)]

    remaining = list(messages)
    last_count = _align_to_human(remaining, take_from_end(remaining, LAST_CHUNK_SIZE, greedy=True))
    if last_count >= len(remaining):
        return [list(messages)]

    last_chunk = remaining[-last_count:]
    remaining = remaining[:-last_count]
    _warn_on_drift(last_chunk, LAST_CHUNK_SIZE)

    remaining_tokens = estimate_tokens(remaining)
    num_front = max(1, _round_half_up(remaining_tokens / MAIN_TARGET_CHUNK))
    target = math.ceil(remaining_tokens / num_front)

    front_chunks: list[list[Message]] = []
    for i in range(num_front):
        if not remaining:
            break
        if i == num_front - 1:
            take_count = len(remaining)
        else:
            take_count = take_from_end(remaining, target, greedy=False)
        take_count = _align_to_human(remaining, take_count)

        chunk = remaining[-take_count:]
        remaining = remaining[:-take_count]
        _warn_on_drift(chunk, target)
        front_chunks.insert(0, chunk)

    return [*front_chunks, last_chunk]


def split_oversized_attachment(attachment: InlineAttachment) -> list[InlineAttachment]:
    """Cut an attachment into ``<base>_partN<ext>`` pieces of LAST_CHUNK_SIZE tokens.

    A piece ends just after the last newline inside the size limit when that
    newline lies past the halfway point, so pieces break on line boundaries
    where possible.
    """
    content = attachment.extracted_content
    max_chars = LAST_CHUNK_SIZE * 4
    if len(content) <= max_chars:
        return [attachment]

    base, ext = os.path.splitext(attachment.file_name or "attachment.txt")
    if not base or not ext:
        base, ext = attachment.file_name or "attachment", ".txt"

    parts: list[InlineAttachment] = []
    remaining = content
    while remaining:
        end = min(len(remaining), max_chars)
        if end < len(remaining):
            newline = remaining.rfind("\n", 0, end + 1)
            if newline > max_chars * 0.5:
                end = newline + 1
        piece, remaining = remaining[:end], remaining[end:]
        parts.append(InlineAttachment(
            file_name=f"{base}_part{len(parts) + 1}{ext}",
            file_size=len(piece),
            file_type=attachment.file_type or "text/plain",
            extracted_content=piece,
        ))
    logger.debug("Split %s into %d parts", attachment.file_name, len(parts))
    return parts


def _bin_attachments(attachments: list[InlineAttachment]) -> list[list[InlineAttachment]]:
    bins: list[list[InlineAttachment]] = []
    current: list[InlineAttachment] = []
    current_tokens = 0
    for attachment in attachments:
        tokens = math.ceil(len(attachment.extracted_content) / 4)
        if current and current_tokens + tokens > LAST_CHUNK_SIZE:
            bins.append(current)
            current, current_tokens = [], 0
        current.append(attachment)
        current_tokens += tokens
    if current:
        bins.append(current)
    return bins


def split_oversized_message(message: Message) -> list[Message]:
    """Spread an attachment-heavy message over several turns.

    Attachments (pre-split when individually too large) are packed into bins
    of at most LAST_CHUNK_SIZE tokens. The first turn keeps the original
    content and non-attachment files, later turns carry a continuation
    placeholder, and an "Acknowledged." turn from the other sender sits
    between consecutive bins. The final turn keeps the original uuid so
    children of the original message stay attached.
    """
    attachments = message.inline_attachments
    if not attachments or estimate_tokens([message]) <= LAST_CHUNK_SIZE:
        return [message]

    pieces = [part for a in attachments for part in split_oversized_attachment(a)]
    bins = _bin_attachments(pieces)
    if len(bins) == 1:
        return [message]
    other_files = message.stored_files
    ack_sender = "assistant" if message.sender == "human" else "human"

    result: list[Message] = []
    previous = message.parent_message_uuid
    for i, group in enumerate(bins):
        is_last = i == len(bins) - 1
        part_uuid = message.uuid if is_last else str(uuid4())
        if i == 0:
            part = message.model_copy(update={
                "uuid": part_uuid,
                "parent_message_uuid": previous,
                "content": [b.model_copy() for b in message.content],
                "files": [*other_files, *group],
            })
        else:
            part = Message(
                uuid=part_uuid,
                parent_message_uuid=previous,
                sender=message.sender,
                content=[{"type": "text", "text": CONTINUATION_TEXT}],
                files=list(group),
                created_at=message.created_at,
            )
        result.append(part)
        previous = part.uuid
        if not is_last:
            ack = Message.from_text(
                ACK_TEXT,
                sender=ack_sender,
                parent_message_uuid=part.uuid,
                created_at=message.created_at,
            )
            result.append(ack)
            previous = ack.uuid

    logger.info("Split message %s into %d turns", message.uuid, len(result))
    return result


def normalize_oversized_messages(messages: list[Message]) -> list[Message]:
    """Apply ``split_oversized_message`` across a sequence."""
    normalized: list[Message] = []
    for message in messages:
        normalized.extend(split_oversized_message(message))
    return normalized
