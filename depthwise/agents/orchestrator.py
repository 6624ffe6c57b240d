"""One chat turn, end to end.

    model text -> ChartPayloadExtractor -> ProtocolWriter -> response body
    search results -> scoring -> DepthController -> research annotations

``ChatTurn.prepare`` opens the model stream and pulls the first event, so a
failure there surfaces as an exception before any byte is written.
``ChatTurn.stream`` then yields protocol frames, always ending with Finish.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx

from depthwise.agents.researcher import Researcher, ResearchEvent, SearchBatch
from depthwise.config import settings
from depthwise.exceptions import StorageError
from depthwise.llm_client import FinishChunk, TextChunk, UsageChunk
from depthwise.models.events import (
    DataAnnotation,
    FinishReason,
    TextDelta,
    ToolCall,
    ToolCallDelta,
    ToolCallStart,
    ToolResult,
)
from depthwise.models.research import Activity, ActivityStatus, ActivityType, Source
from depthwise.services import database as db
from depthwise.services import logger as log_service
from depthwise.services import scoring, streaming
from depthwise.services.chart_extractor import ChartPayloadExtractor, extract_chart
from depthwise.services.context_window import count_message_tokens, truncate_messages
from depthwise.services.depth import Deactivate, DepthController, InitProgress, UpdateProgress
from depthwise.services.protocol import ProtocolWriter, estimate_tokens
from depthwise.services.registry import get_max_allowed_tokens, is_reasoning_model
from depthwise.services.related_questions import generate_related_questions
from depthwise.services.usage_tracker import TokenUsage, UsageTracker

SNIPPET_LENGTH = 500

DisconnectCheck = Callable[[], Awaitable[bool]]


def _title_for(messages: list[dict[str, Any]]) -> str:
    for message in messages:
        if message.get("role") == "user" and isinstance(message.get("content"), str):
            return message["content"][:100]
    return "Untitled"


class ChatTurn:
    def __init__(
        self,
        *,
        chat_id: str,
        messages: list[dict[str, Any]],
        model: str,
        search_mode: bool,
        user_id: str | None = None,
        researcher: Researcher | None = None,
        is_disconnected: DisconnectCheck | None = None,
    ):
        self.chat_id = chat_id
        self.messages = messages
        self.model = model
        self.search_mode = search_mode
        self.user_id = user_id or settings.default_user_id
        self.researcher = researcher or Researcher(model=model, search_mode=search_mode, chat_id=chat_id)
        self.is_disconnected = is_disconnected

        self.writer = ProtocolWriter()
        self.extractor = ChartPayloadExtractor()
        self.controller: DepthController | None = None
        self.finish_reason = "stop"
        self.cancelled = False
        self._events: AsyncIterator[ResearchEvent] | None = None
        self._first: ResearchEvent | None = None
        self._text_parts: list[str] = []
        self._started = 0.0

    # --- Setup ---

    async def prepare(self) -> None:
        """Load state and open the model stream; raises before any output."""
        self._started = time.monotonic()
        truncated = truncate_messages(self.messages, get_max_allowed_tokens(self.model))
        self.writer.add_prompt_estimate(
            count_message_tokens(truncated) + estimate_tokens(self.researcher.system)
        )

        if self.search_mode:
            session = await db.load_research_session(self.chat_id)
            self.controller = DepthController(session)
            await self.controller.dispatch(InitProgress(total_steps=self.researcher.max_steps))

        log_service.log_event(
            event_type="chat_turn_started",
            message="Chat turn started",
            chat_id=self.chat_id,
            model=self.model,
            search_mode=self.search_mode,
            manual=self.researcher.manual,
            messages=len(truncated),
        )

        self._events = self.researcher.run(truncated)
        try:
            self._first = await anext(self._events)
        except StopAsyncIteration:
            self._first = None

    async def _all_events(self) -> AsyncIterator[ResearchEvent]:
        if self._first is not None:
            yield self._first
        async for event in self._events:
            yield event

    # --- Streaming ---

    async def stream(self) -> AsyncIterator[str]:
        if self._events is None:
            await self.prepare()
        frames = self._run()
        try:
            async for frame in frames:
                yield frame
        except (asyncio.CancelledError, GeneratorExit):
            self.cancelled = True
            await frames.aclose()
            await self._close_upstream()
            log_service.log_event(
                event_type="chat_turn_cancelled",
                message="Client went away; persistence skipped",
                chat_id=self.chat_id,
            )
            raise

    async def _close_upstream(self) -> None:
        if self._events is not None:
            await self._events.aclose()

    async def _run(self) -> AsyncIterator[str]:
        writer = self.writer
        failed = False
        try:
            async for event in self._all_events():
                if self.is_disconnected is not None and await self.is_disconnected():
                    self.cancelled = True
                    await self._close_upstream()
                    log_service.log_event(
                        event_type="chat_turn_cancelled",
                        message="Client disconnected mid-stream",
                        chat_id=self.chat_id,
                    )
                    return
                for frame in await self._handle(event):
                    yield frame
            for frame in self._emit(self.extractor.flush()):
                yield frame
        except Exception as e:
            failed = True
            log_service.logger.exception(f"Chat turn {self.chat_id} failed mid-stream: {e}")
            yield writer.error(e)

        if not failed:
            async for frame in self._complete():
                yield frame

        reason = FinishReason.ERROR if writer.errored else FinishReason.normalize(self.finish_reason)
        await self._record_usage(reason)
        yield writer.finish(reason)
        log_service.log_event(
            event_type="chat_turn_finished",
            message="Chat turn finished",
            chat_id=self.chat_id,
            finish_reason=reason.value,
            duration_ms=int((time.monotonic() - self._started) * 1000),
            **writer.usage.to_dict(),
        )

    def _emit(self, events: list[TextDelta | DataAnnotation]) -> list[str]:
        frames = []
        for event in events:
            if isinstance(event, TextDelta):
                frames.append(self.writer.text(event.text))
            else:
                frames.append(self.writer.data(event.data))
        return frames

    async def _handle(self, event: ResearchEvent) -> list[str]:
        writer = self.writer
        if isinstance(event, TextChunk):
            self._text_parts.append(event.text)
            return self._emit(self.extractor.feed(event.text))
        if isinstance(event, UsageChunk):
            writer.update_usage(event.usage.input_tokens, event.usage.output_tokens)
            return []
        if isinstance(event, FinishChunk):
            self.finish_reason = event.reason
            return []
        if isinstance(event, ToolCallStart):
            return [writer.tool_call_start(event.tool_call_id, event.tool_name)]
        if isinstance(event, ToolCallDelta):
            return [writer.tool_call_delta(event.tool_call_id, event.args_text_delta)]
        if isinstance(event, ToolCall):
            return [writer.tool_call(event.tool_call_id, event.tool_name, event.args)]
        if isinstance(event, ToolResult):
            return [writer.tool_result(event.tool_call_id, event.result)]
        if isinstance(event, SearchBatch):
            return await self._ingest(event)
        return []

    # --- Research ---

    async def _activity(self, activity: Activity) -> list[str]:
        controller = self.controller
        if not await controller.add_activity(activity):
            return []
        session = controller.session
        return [self.writer.data(streaming.activity_update(session.activity[-1], session).data)]

    async def _ingest(self, batch: SearchBatch) -> list[str]:
        """Score a search batch, feed the depth controller, annotate the stream."""
        if self.controller is None:
            return []
        controller = self.controller
        frames = await self._activity(
            Activity(ActivityType.SEARCH, ActivityStatus.PENDING, f"Searching for {batch.query}")
        )

        if batch.response is None:
            frames += await self._activity(
                Activity(ActivityType.SEARCH, ActivityStatus.ERROR, f"Search failed: {batch.error}")
            )
            return frames

        depth_before = controller.session.current_depth
        added = 0
        for result in batch.response.results:
            metrics = scoring.score(result.content, batch.query, result.url, result.published_date)
            source = Source(
                url=result.url,
                title=result.title,
                relevance=max(0.0, min(float(result.score), 1.0)),
                content_snippet=result.content[:SNIPPET_LENGTH],
                query_used=batch.query,
                published_date=result.published_date,
            )
            if await controller.add_source(source, metrics):
                added += 1
                session = controller.session
                frames.append(self.writer.data(streaming.source_update(session.sources[-1], session).data))

        session = controller.session
        await controller.dispatch(UpdateProgress(session.completed_steps + 1, session.total_expected_steps))
        frames += await self._activity(
            Activity(ActivityType.SEARCH, ActivityStatus.COMPLETE, f"Found {added} sources for {batch.query}")
        )
        if controller.session.current_depth > depth_before:
            frames += await self._activity(
                Activity(
                    ActivityType.ANALYZE,
                    ActivityStatus.COMPLETE,
                    f"Advancing research to depth {controller.session.current_depth}",
                )
            )
        frames.append(self.writer.data(streaming.research_state(controller.session).data))
        return frames

    # --- Completion ---

    async def _complete(self) -> AsyncIterator[str]:
        content, chart = extract_chart("".join(self._text_parts))
        if self.extractor.charts:
            chart = self.extractor.charts[0]
        annotations: list[dict[str, Any]] = []
        if chart is not None:
            annotations.append(streaming.chart(chart).data)

        if settings.related_questions_enabled and not is_reasoning_model(self.model) and content:
            yield self.writer.data(streaming.related_questions().data)
            assistant = {"role": "assistant", "content": content}
            items, _ = await generate_related_questions([*self.messages, assistant], self.model)
            related = streaming.related_questions(items).data
            annotations.append(related)
            yield self.writer.data(related)

        try:
            await self._persist(content, annotations)
        except StorageError as e:
            log_service.logger.error(f"Failed to persist chat {self.chat_id}: {e}")
            yield self.writer.error("Failed to save chat history")

    async def _persist(self, content: str, annotations: list[dict[str, Any]]) -> None:
        assistant: dict[str, Any] = {"role": "assistant", "content": content}
        if annotations:
            assistant["annotations"] = annotations

        existing = await db.get_chat(self.chat_id)
        chat = {
            "id": self.chat_id,
            "title": (existing or {}).get("title") or _title_for(self.messages),
            "createdAt": (existing or {}).get("createdAt"),
            "userId": self.user_id,
            "path": f"/search/{self.chat_id}",
            "messages": [*self.messages, assistant],
        }
        await db.save_chat(chat, self.user_id)
        if self.controller is not None:
            await self.controller.dispatch(Deactivate())
            await db.save_research_session(self.controller.session)

    async def _record_usage(self, reason: FinishReason) -> None:
        usage = self.writer.usage
        tokens = TokenUsage(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
        )
        try:
            await UsageTracker(self.user_id).track_usage(
                model=self.model, chat_id=self.chat_id, usage=tokens, finish_reason=reason
            )
        except Exception as e:
            log_service.logger.warning(f"Usage tracking failed for chat {self.chat_id}: {e}")

        if not settings.usage_report_url:
            return
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(
                    settings.usage_report_url,
                    json={
                        "model": self.model,
                        "chatId": self.chat_id,
                        "usage": tokens.to_dict(),
                        "finishReason": reason.value,
                    },
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            log_service.logger.warning(f"Usage report to {settings.usage_report_url} failed: {e}")
