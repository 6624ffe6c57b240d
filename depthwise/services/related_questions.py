from __future__ import annotations

import json
from typing import Any

from depthwise.config import settings
from depthwise.llm_client import Usage
from depthwise.llm_client import client as llm_client
from depthwise.services.logger import logger
from depthwise.services.prompt_store import render_prompt

MAX_QUESTIONS = 3


def parse_items(text: str) -> list[dict[str, str]]:
    """Pull ``[{"query": ...}]`` out of a model reply; anything else yields []."""
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return []
    try:
        payload = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return []
    items = payload.get("items") if isinstance(payload, dict) else None
    if not isinstance(items, list):
        return []
    queries = [
        {"query": item["query"].strip()}
        for item in items
        if isinstance(item, dict) and isinstance(item.get("query"), str) and item["query"].strip()
    ]
    return queries[:MAX_QUESTIONS]


async def generate_related_questions(
    messages: list[dict[str, Any]], model: str
) -> tuple[list[dict[str, str]], Usage]:
    """Three follow-up queries for the conversation so far."""
    transcript = [
        {"role": m["role"], "content": m["content"]}
        for m in messages
        if m.get("role") in ("user", "assistant") and isinstance(m.get("content"), str)
    ]
    if not transcript:
        return [], Usage()

    try:
        response = await llm_client().chat.complete(
            model=settings.related_questions_model or model,
            system=render_prompt("related_questions.system_prompt"),
            messages=transcript,
            max_tokens=512,
            json_mode=True,
            caller="related_questions",
        )
    except Exception as e:
        logger.warning(f"Related questions failed: {e}")
        return [], Usage()

    items = parse_items(response.text)
    if not items:
        logger.warning("Related questions reply had no usable items")
    return items, response.usage
