"""The host's own conversation JSON, passed through as-is."""

from typing import Any

from chatgraft.codecs.models import DEFAULT_IMPORT_NAME, ImportedConversation
from chatgraft.models import MalformedInputError, from_wire
from chatgraft.tree.paths import active_branch, branch_points
from chatgraft.utils.json import dumps_pretty

BRANCH_WARNING = "Multiple branches detected. Importing the active branch only."


def format_raw(data: dict[str, Any]) -> str:
    return dumps_pretty(data)


def parse_raw(data: Any) -> ImportedConversation:
    """Import the active branch of a raw conversation document.

    The branch ends at ``current_leaf_message_uuid``, or at the deepest leaf
    when that is absent. Raises MalformedInputError for documents without
    messages and BrokenChainError for dangling parent pointers.
    """
    if not isinstance(data, dict) or not isinstance(data.get("chat_messages"), list):
        raise MalformedInputError("Invalid raw format: missing chat_messages array")

    messages = [from_wire(record, data.get("uuid")) for record in data["chat_messages"]]
    if not messages:
        raise MalformedInputError("No messages found in file")

    warnings = [BRANCH_WARNING] if branch_points(messages) else []
    branch = active_branch(messages, data.get("current_leaf_message_uuid"))

    return ImportedConversation(
        name=data.get("name") or DEFAULT_IMPORT_NAME,
        source_format="raw",
        messages=branch,
        model=data.get("model"),
        warnings=warnings,
    )
