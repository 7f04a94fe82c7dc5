"""Pick the codec for an uploaded conversation file."""

from typing import Any

from chatgraft.models import MalformedInputError
from chatgraft.utils.json import load_json

__all__ = ["MalformedInputError", "ZIP_MAGIC", "detect_import_format", "detect_json_format"]

ZIP_MAGIC = b"PK\x03\x04"


def detect_json_format(data: Any) -> str:
    """Tell raw host JSON from LibreChat JSON.

    Returns "raw" or "librechat".
    Raises MalformedInputError for unrecognized structures.
    """
    if isinstance(data, dict):
        if "chat_messages" in data:
            return "raw"
        if "messages" in data:
            return "librechat"
        raise MalformedInputError("Unrecognized JSON object: expected chat_messages or messages")
    raise MalformedInputError("Unrecognized JSON document: expected an object")


def detect_import_format(content: bytes, filename: str) -> str:
    """Detect the import format from the file name and leading bytes.

    Returns "zip", "raw", "librechat", or "txt".
    """
    name = filename.lower()
    if name.endswith(".zip") or content.startswith(ZIP_MAGIC):
        return "zip"
    if name.endswith(".jsonl"):
        raise MalformedInputError("JSONL exports hold flattened text only and cannot be imported")
    if name.endswith(".json"):
        return detect_json_format(load_json(content, filename))
    return "txt"
