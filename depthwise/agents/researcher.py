"""Model-driving half of a chat turn.

``Researcher.run`` is an async generator of model and tool events. With a
tool-capable model it runs a bounded tool-calling loop around the ``search``
tool; otherwise (manual mode) it searches once up front and injects the
results into the system prompt.
"""
from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable

from depthwise.config import settings
from depthwise.llm_client import (
    FinishChunk,
    OpenRouterClientAdapter,
    TextChunk,
    ToolCallChunk,
    UsageChunk,
)
from depthwise.llm_client import client as llm_client
from depthwise.models.events import ToolCall, ToolCallDelta, ToolCallStart, ToolResult
from depthwise.services import logger as log_service
from depthwise.services.context_window import message_text
from depthwise.services.prompt_store import render_prompt
from depthwise.services.registry import is_tool_call_supported
from depthwise.tools import search_provider
from depthwise.tools.search_provider import SearchResponse

SEARCH_TOOL = {
    "name": "search",
    "description": (
        "Search the web for information. Use specific, targeted queries. "
        "Call it several times with different queries to cover different angles."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "The search query."},
            "max_results": {
                "type": "integer",
                "description": "Number of results to return (1-20).",
                "default": 10,
            },
            "search_depth": {
                "type": "string",
                "enum": ["basic", "advanced"],
                "description": "Use 'advanced' for thorough research, 'basic' for quick lookups.",
            },
            "time_range": {
                "type": "string",
                "enum": ["day", "week", "month", "year"],
                "description": "Filter results by recency. Omit for all time.",
            },
        },
        "required": ["query"],
    },
}

SearchFn = Callable[..., Awaitable[SearchResponse]]


@dataclass
class SearchBatch:
    """Outcome of one search tool call, handed to the orchestrator for scoring."""

    tool_call_id: str
    query: str
    response: SearchResponse | None = None
    error: str | None = None


@dataclass
class _PendingCall:
    id: str = ""
    name: str = ""
    arguments: list[str] = field(default_factory=list)
    started: bool = False

    @property
    def args_text(self) -> str:
        return "".join(self.arguments)


ResearchEvent = (
    TextChunk
    | UsageChunk
    | FinishChunk
    | ToolCallStart
    | ToolCallDelta
    | ToolCall
    | ToolResult
    | SearchBatch
)


def system_prompt(search_mode: bool) -> str:
    base = render_prompt("researcher.system_prompt", current_date=datetime.now().strftime("%Y-%m-%d %H:%M"))
    key = "researcher.search_instructions" if search_mode else "researcher.search_disabled_instructions"
    return f"{base}\n\n{render_prompt(key)}"


def _parse_args(text: str) -> dict[str, Any]:
    if not text.strip():
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _last_user_text(messages: list[dict[str, Any]]) -> str:
    for message in reversed(messages):
        if message.get("role") == "user":
            return message_text(message)
    return ""


class Researcher:
    def __init__(
        self,
        *,
        model: str,
        search_mode: bool,
        chat_id: str = "",
        llm: OpenRouterClientAdapter | None = None,
        search: SearchFn | None = None,
        max_steps: int | None = None,
    ):
        self.model = model
        self.search_mode = search_mode
        self.chat_id = chat_id
        self.llm = llm
        self.search = search or search_provider.search
        self.max_steps = max_steps or settings.max_tool_steps
        self.manual = not is_tool_call_supported(model)

    @property
    def system(self) -> str:
        return system_prompt(self.search_mode)

    async def run(self, messages: list[dict[str, Any]]) -> AsyncIterator[ResearchEvent]:
        if self.manual:
            async for event in self._run_manual(messages):
                yield event
        else:
            async for event in self._run_tools(messages):
                yield event

    async def _execute_search(self, tool_call_id: str, args: dict[str, Any]) -> tuple[SearchBatch, Any]:
        query = str(args.get("query", "")).strip()
        if not query:
            error = "search requires a non-empty query"
            return SearchBatch(tool_call_id, query, error=error), {"error": error}
        try:
            response = await self.search(
                query,
                search_depth=args.get("search_depth") or "advanced",
                max_results=args.get("max_results") or settings.search_max_results,
                time_range=args.get("time_range"),
            )
        except Exception as e:
            log_service.log_research_step(self.chat_id, "search", "failed", {"query": query, "error": str(e)})
            return SearchBatch(tool_call_id, query, error=str(e)), {"error": str(e)}

        result = {
            "query": query,
            "provider": response.provider,
            "results": search_provider.results_to_dicts(response.results),
        }
        return SearchBatch(tool_call_id, query, response=response), result

    async def _run_tools(self, messages: list[dict[str, Any]]) -> AsyncIterator[ResearchEvent]:
        client = self.llm or llm_client()
        conversation = list(messages)
        tools = [SEARCH_TOOL] if self.search_mode else None
        steps = self.max_steps if self.search_mode else 1
        finish_reason = "stop"

        for _ in range(steps):
            pending: dict[int, _PendingCall] = {}
            text_parts: list[str] = []

            async with client.chat.stream(
                model=self.model,
                system=self.system,
                messages=conversation,
                tools=tools,
            ) as stream:
                async for chunk in stream.chunks():
                    if isinstance(chunk, TextChunk):
                        text_parts.append(chunk.text)
                        yield chunk
                    elif isinstance(chunk, ToolCallChunk):
                        call = pending.setdefault(chunk.index, _PendingCall())
                        call.id = call.id or chunk.id or ""
                        call.name = call.name or chunk.name or ""
                        if not call.started and call.id and call.name:
                            call.started = True
                            yield ToolCallStart(tool_call_id=call.id, tool_name=call.name)
                        if chunk.arguments:
                            call.arguments.append(chunk.arguments)
                            if call.started:
                                yield ToolCallDelta(tool_call_id=call.id, args_text_delta=chunk.arguments)
                    elif isinstance(chunk, UsageChunk):
                        yield chunk
                    elif isinstance(chunk, FinishChunk):
                        finish_reason = chunk.reason

            calls = [pending[i] for i in sorted(pending)]
            if not calls:
                break

            for call in calls:
                call.id = call.id or f"call_{uuid.uuid4().hex[:12]}"
            conversation.append(
                {
                    "role": "assistant",
                    "content": "".join(text_parts) or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": call.args_text or "{}"},
                        }
                        for call in calls
                    ],
                }
            )

            for call in calls:
                args = _parse_args(call.args_text)
                yield ToolCall(tool_call_id=call.id, tool_name=call.name, args=args)
                if call.name == SEARCH_TOOL["name"]:
                    batch, result = await self._execute_search(call.id, args)
                    yield batch
                else:
                    result = {"error": f"Unknown tool: {call.name}"}
                yield ToolResult(tool_call_id=call.id, result=result)
                conversation.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": json.dumps(result, ensure_ascii=False),
                    }
                )

        yield FinishChunk(finish_reason)

    async def _run_manual(self, messages: list[dict[str, Any]]) -> AsyncIterator[ResearchEvent]:
        client = self.llm or llm_client()
        system = self.system
        query = _last_user_text(messages).strip()
        finish_reason = "stop"

        if self.search_mode and query:
            tool_call_id = f"call_{uuid.uuid4().hex[:12]}"
            args = {"query": query}
            yield ToolCallStart(tool_call_id=tool_call_id, tool_name=SEARCH_TOOL["name"])
            yield ToolCall(tool_call_id=tool_call_id, tool_name=SEARCH_TOOL["name"], args=args)
            batch, result = await self._execute_search(tool_call_id, args)
            yield batch
            yield ToolResult(tool_call_id=tool_call_id, result=result)
            if batch.response is not None:
                system = "\n\n".join(
                    [
                        system,
                        render_prompt(
                            "researcher.manual_search_context",
                            query=query,
                            results=json.dumps(result["results"], ensure_ascii=False, indent=2),
                        ),
                    ]
                )

        async with client.chat.stream(model=self.model, system=system, messages=messages) as stream:
            async for chunk in stream.chunks():
                if isinstance(chunk, FinishChunk):
                    finish_reason = chunk.reason
                elif isinstance(chunk, (TextChunk, UsageChunk)):
                    yield chunk

        yield FinishChunk(finish_reason)
