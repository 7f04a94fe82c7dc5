"""Intermediate representation for imported conversations.

Every parser produces an ImportedConversation: one linear branch of
messages in order, which ImportService turns into a new conversation or a
phantom overlay. Parent pointers on these messages are not meaningful
until the sequence is chained.
"""

from dataclasses import dataclass, field

from chatgraft.models import Message

DEFAULT_IMPORT_NAME = "Imported Conversation"


@dataclass
class ImportedConversation:
    """A parsed conversation, ready for import."""

    name: str
    source_format: str  # "txt" | "librechat" | "raw" | "zip"
    messages: list[Message] = field(default_factory=list)
    model: str | None = None
    warnings: list[str] = field(default_factory=list)
    # Bundle member name -> bytes, for files shipped inside a zip bundle
    bundled_files: dict[str, bytes] = field(default_factory=dict)


@dataclass
class ImportOptions:
    """What an import keeps and which model the new conversation uses."""

    model: str | None = None
    include_files: bool = True
    include_tool_calls: bool = True
