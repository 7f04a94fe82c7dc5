"""Human/assistant alternation repair for linear message sequences."""

from uuid import uuid4

from chatgraft.models import Message

CONTINUATION_TEXT = "[Continued attachments from previous message]"
ACK_TEXT = "Acknowledged."
CONTINUE_TEXT = "Continue."


def _first_text(message: Message) -> str:
    if not message.content:
        return ""
    return message.content[0].text or ""


def _other(sender: str) -> str:
    return "assistant" if sender == "human" else "human"


def collapse_continuations(messages: list[Message]) -> list[Message]:
    """Fold split-attachment continuation turns back into their first part.

    A continuation turn preceded by an "Acknowledged." turn from the other
    sender, itself preceded by a turn from the continuation's sender, is
    merged into that earlier turn: the files are appended and the merged
    message takes the continuation's uuid so later parent pointers still
    resolve. Continuations without that shape are left in place.
    """
    result = list(messages)
    i = 0
    while i < len(result):
        message = result[i]
        if _first_text(message) != CONTINUATION_TEXT or i < 2:
            i += 1
            continue
        ack, first = result[i - 1], result[i - 2]
        if (
            ack.sender != _other(message.sender)
            or _first_text(ack) != ACK_TEXT
            or first.sender != message.sender
        ):
            i += 1
            continue
        merged = first.model_copy(update={
            "uuid": message.uuid,
            "files": [*first.files, *message.files],
        })
        result[i - 2:i + 1] = [merged]
        i -= 1
    return result


def repair_alternation(messages: list[Message]) -> list[Message]:
    """Return a strictly alternating copy of a linear message sequence.

    Continuation pairs are collapsed first. Then a filler turn is inserted
    between any two consecutive same-sender messages ("Acknowledged." from
    the assistant, "Continue." from the human), parented on the first and
    re-parenting the second. Already-alternating input comes back unchanged.
    """
    cleaned = collapse_continuations(messages)
    result: list[Message] = []
    for message in cleaned:
        if result and result[-1].sender == message.sender:
            current = result[-1]
            filler_sender = _other(current.sender)
            filler = Message.from_text(
                ACK_TEXT if filler_sender == "assistant" else CONTINUE_TEXT,
                sender=filler_sender,
                uuid=str(uuid4()),
                parent_message_uuid=current.uuid,
                created_at=current.created_at,
            )
            result.append(filler)
            message = message.model_copy(update={"parent_message_uuid": filler.uuid})
        result.append(message)
    return result
