"""Token estimation and token-budgeted message selection.

The estimate is the character-count heuristic (one token per four
characters, rounded up). It is monotonic in content length, which is all
the chunker relies on; it is not a tokenizer.
"""

import math
from abc import ABC, abstractmethod

from chatgraft.models import InlineAttachment, Message, SandboxFile, extract_text


class TokenCounter(ABC):
    """Interface for counting tokens in text."""

    @abstractmethod
    def count(self, text: str) -> int:
        """Return the estimated token count for the given text."""
        ...


class ApproximateTokenCounter(TokenCounter):
    """ceil(len(text) / 4)."""

    def count(self, text: str) -> int:
        return math.ceil(len(text) / 4)


_default_counter = ApproximateTokenCounter()


def countable_text(message: Message) -> str:
    """Text counted for a message: its extracted text plus every inlined file body.

    Inline attachments and sandbox files small enough to inline both reach
    the chatlog as attachment text, so both count.
    """
    inlined = [
        f.extracted_content or ""
        for f in message.files
        if isinstance(f, InlineAttachment) or (isinstance(f, SandboxFile) and f.inlines)
    ]
    return extract_text(message) + "".join(inlined)


def estimate_tokens(messages: list[Message], counter: TokenCounter | None = None) -> int:
    """Estimated tokens of a message sequence."""
    counter = counter or _default_counter
    return counter.count("".join(countable_text(m) for m in messages))


def take_up_to_tokens(messages: list[Message], budget: int, greedy: bool = False) -> int:
    """Count how many leading messages fit within ``budget`` tokens.

    Conservative mode stops before the message that would cross the budget;
    greedy mode includes it. At least one message is always taken when any
    exist.
    """
    total = 0
    count = 0
    for message in messages:
        tokens = estimate_tokens([message])
        if total + tokens > budget and count > 0:
            if greedy:
                count += 1
            break
        total += tokens
        count += 1
    return count


def take_from_end(messages: list[Message], budget: int, greedy: bool = False) -> int:
    """Like ``take_up_to_tokens`` but counting from the end of the sequence."""
    return take_up_to_tokens(list(reversed(messages)), budget, greedy)
