"""Line-delimited ``{role, content}`` export. Flattened text only; not importable."""

import json

from chatgraft.models import Message, extract_text

JSONL_ROLES = {"human": "user", "assistant": "assistant"}


def format_jsonl(messages: list[Message]) -> str:
    return "\n".join(
        json.dumps({"role": JSONL_ROLES[m.sender], "content": extract_text(m)}, ensure_ascii=False)
        for m in messages
    )
