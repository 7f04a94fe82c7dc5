"""Plain-text chatlogs of message sequences."""

from chatgraft.models import Message, to_chatlog
from chatgraft.tree.alternation import repair_alternation

CHATLOG_NAME = "chatlog.txt"

ROLE_LABELS = {"human": "[User]", "assistant": "[Assistant]"}


def build_chatlog(messages: list[Message], role_labels: bool = True) -> str:
    """Render a sequence as one text document, one blank-line-separated turn each.

    The sequence is made to alternate first. With ``role_labels`` every turn
    is preceded by a ``[User]`` or ``[Assistant]`` line.
    """
    turns = []
    for message in repair_alternation(messages):
        text = to_chatlog(message)
        turns.append(f"{ROLE_LABELS[message.sender]}\n{text}" if role_labels else text)
    return "\n\n".join(turns)
