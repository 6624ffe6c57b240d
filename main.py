"""depthwise - conversational search with adaptive research depth

Simple CLI for running one chat turn from the terminal.
"""

import argparse
import asyncio
import uuid

from depthwise.agents.orchestrator import ChatTurn
from depthwise.config import settings
from depthwise.models.events import AnnotationType, DataAnnotation, ErrorEvent, Finish, Passthrough, TextDelta, ToolCall
from depthwise.services.database import close_redis
from depthwise.services.protocol import FrameDecoder
from depthwise.services.streaming import parse_annotation


def _print_annotation(data: dict) -> None:
    parsed = parse_annotation(data)
    if parsed is None or not isinstance(parsed[1], dict):
        return
    kind, payload = parsed
    if kind == AnnotationType.RESEARCH_ACTIVITY:
        activity = payload.get("activity", {})
        print(f"\n  [{activity.get('status')}] {activity.get('message')} (depth {payload.get('currentDepth')})")
    elif kind == AnnotationType.RESEARCH_SOURCE:
        source = payload.get("source", {})
        print(f"  [+] {source.get('title', '')[:70]} - {source.get('url')}")
    elif kind == AnnotationType.RESEARCH_STATE:
        print(f"  [*] depth {payload.get('currentDepth')}/{payload.get('maxDepth')}, {len(payload.get('sources', []))} sources")
    elif kind == AnnotationType.CHART:
        print(f"\n[chart] {payload.get('title') or payload.get('type')}")
    elif kind == AnnotationType.RELATED_QUESTIONS and payload.get("items"):
        print("\nRelated:")
        for item in payload["items"]:
            print(f"  - {item.get('query')}")


async def run_chat(query: str, model: str | None, search: bool, chat_id: str | None) -> None:
    model = model or settings.default_model
    print(f"Query: {query}")
    print(f"Model: {model} (search {'on' if search else 'off'})")
    print("-" * 50)

    turn = ChatTurn(
        chat_id=chat_id or uuid.uuid4().hex,
        messages=[{"role": "user", "content": query}],
        model=model,
        search_mode=search,
    )
    decoder = FrameDecoder()
    try:
        async for frame in turn.stream():
            for event in decoder.feed(frame):
                if isinstance(event, TextDelta):
                    print(event.text, end="", flush=True)
                elif isinstance(event, ToolCall):
                    print(f"\n[~] {event.tool_name}: {event.args.get('query', '')}")
                elif isinstance(event, DataAnnotation) and isinstance(event.data, dict):
                    _print_annotation(event.data)
                elif isinstance(event, ErrorEvent):
                    print(f"\n[!] Error: {event.message}")
                elif isinstance(event, Finish):
                    print(f"\n\n[*] Finished: {event.finish_reason.value}")
                    print(f"   Tokens: {event.prompt_tokens} prompt / {event.completion_tokens} completion")
                elif isinstance(event, Passthrough):
                    print(event.line)
    finally:
        await close_redis()


def main():
    parser = argparse.ArgumentParser(description="depthwise chat CLI")
    parser.add_argument("--query", "-q", required=True, help="Question to ask")
    parser.add_argument("--model", "-m", help="provider:model (default: from config)")
    parser.add_argument("--no-search", action="store_true", help="Disable web search")
    parser.add_argument("--chat-id", help="Continue an existing chat id")

    args = parser.parse_args()

    asyncio.run(run_chat(args.query, args.model, not args.no_search, args.chat_id))


if __name__ == "__main__":
    main()
