from __future__ import annotations

import json
from typing import Any

from depthwise.services.protocol import estimate_tokens


def message_text(message: dict[str, Any]) -> str:
    content = message.get("content", "")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "") if isinstance(part, dict) else str(part) for part in content
        )
    return json.dumps(content, ensure_ascii=False)


def count_message_tokens(messages: list[dict[str, Any]]) -> int:
    return sum(estimate_tokens(message_text(m)) for m in messages)


def truncate_messages(messages: list[dict[str, Any]], max_tokens: int) -> list[dict[str, Any]]:
    """Keep the most recent messages that fit in ``max_tokens``.

    The result always starts with a user message; leading assistant/tool
    messages left over from the cut are dropped.
    """
    kept: list[dict[str, Any]] = []
    total = 0
    for message in reversed(messages):
        tokens = estimate_tokens(message_text(message))
        if kept and total + tokens > max_tokens:
            break
        kept.append(message)
        total += tokens
    kept.reverse()

    while kept and kept[0].get("role") != "user":
        kept.pop(0)
    return kept
