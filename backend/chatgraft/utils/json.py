"""JSON helpers shared by the codecs.

Parsing external input raises MalformedInputError with the offending
source named.
"""

import json
from typing import Any

from chatgraft.models import MalformedInputError


def load_json(raw: bytes | str, source: str = "file") -> Any:
    """Parse an imported document, raising MalformedInputError on bad input."""
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedInputError(f"Invalid JSON in {source}: {e}") from e


def dumps_pretty(value: Any) -> str:
    """Two-space indented JSON, non-ASCII kept as-is."""
    return json.dumps(value, indent=2, ensure_ascii=False)
