from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from depthwise.agents.orchestrator import ChatTurn
from depthwise.agents.researcher import SearchBatch
from depthwise.config import settings
from depthwise.exceptions import StorageError
from depthwise.llm_client import FinishChunk, TextChunk, Usage, UsageChunk
from depthwise.models.events import (
    DataAnnotation,
    ErrorEvent,
    Finish,
    FinishReason,
    TextDelta,
    ToolCall,
    ToolCallStart,
    ToolResult,
)
from depthwise.models.research import ActivityStatus
from depthwise.services import database as db
from depthwise.services.protocol import decode
from depthwise.services.usage_tracker import UsageTracker
from depthwise.tools.search_provider import SearchResponse
from depthwise.tools.tavily_search import SearchResult

MESSAGES = [{"role": "user", "content": "How fast is solar power growing?"}]

CHART = {"type": "bar", "labels": ["2023", "2024"], "datasets": [{"label": "GW", "data": [300, 450]}]}


class ScriptedResearcher:
    """Stands in for Researcher, replaying a fixed list of events."""

    manual = False
    max_steps = 3
    system = "You are a researcher."

    def __init__(self, events):
        self.events = events
        self.closed = False
        self.received = None

    async def run(self, messages):
        self.received = messages
        try:
            for event in self.events:
                if isinstance(event, Exception):
                    raise event
                yield event
        finally:
            self.closed = True


def _search_batch() -> SearchBatch:
    results = [
        SearchResult(
            title="Solar report",
            url="https://energy.gov/solar",
            content="Solar power capacity grew quickly.\n\nSolar power is now cheap.",
            score=0.92,
            published_date="2025-01-10",
        ),
        SearchResult(
            title="Blog",
            url="https://example.com/post",
            content="Some notes about solar power growth.",
            score=0.41,
        ),
    ]
    return SearchBatch("call_1", "solar power", response=SearchResponse(results=results, provider="tavily"))


def _search_turn_events():
    return [
        TextChunk("Let me search.\n"),
        ToolCallStart(tool_call_id="call_1", tool_name="search"),
        ToolCall(tool_call_id="call_1", tool_name="search", args={"query": "solar power"}),
        _search_batch(),
        ToolResult(tool_call_id="call_1", result={"query": "solar power", "results": []}),
        TextChunk("Solar is growing."),
        UsageChunk(Usage(input_tokens=12, output_tokens=5)),
        FinishChunk("stop"),
    ]


def _annotations(events, kind):
    return [e.data["data"] for e in events if isinstance(e, DataAnnotation) and e.data["type"] == kind]


async def _run(turn: ChatTurn):
    frames = [frame async for frame in turn.stream()]
    return decode("".join(frames))


@pytest.fixture
def related():
    mock = AsyncMock(return_value=([{"query": "What about wind?"}], Usage(3, 4)))
    with patch("depthwise.agents.orchestrator.generate_related_questions", mock):
        yield mock


class TestSearchTurn:
    @pytest.mark.asyncio
    async def test_frames_and_finish(self, fake_redis, related):
        researcher = ScriptedResearcher(_search_turn_events())
        turn = ChatTurn(
            chat_id="chat-1", messages=MESSAGES, model="openai:gpt-4o-mini", search_mode=True, researcher=researcher
        )
        events = await _run(turn)

        assert isinstance(events[-1], Finish)
        assert events[-1].finish_reason == FinishReason.STOP
        assert (events[-1].prompt_tokens, events[-1].completion_tokens) == (12, 5)
        assert sum(isinstance(e, Finish) for e in events) == 1

        text = "".join(e.text for e in events if isinstance(e, TextDelta))
        assert text == "Let me search.\nSolar is growing."
        assert any(isinstance(e, ToolCallStart) for e in events)
        assert any(isinstance(e, ToolCall) and e.args == {"query": "solar power"} for e in events)
        assert any(isinstance(e, ToolResult) for e in events)

    @pytest.mark.asyncio
    async def test_research_annotations(self, fake_redis, related):
        turn = ChatTurn(
            chat_id="chat-1",
            messages=MESSAGES,
            model="openai:gpt-4o-mini",
            search_mode=True,
            researcher=ScriptedResearcher(_search_turn_events()),
        )
        events = await _run(turn)

        activities = _annotations(events, "research-activity")
        assert activities[0]["activity"]["status"] == "pending"
        assert activities[0]["activity"]["message"] == "Searching for solar power"
        assert activities[-1]["activity"]["status"] == "complete"
        assert activities[-1]["completedSteps"] == 1
        assert activities[-1]["totalExpectedSteps"] == 3

        sources = _annotations(events, "research-source")
        assert [s["source"]["url"] for s in sources] == ["https://energy.gov/solar", "https://example.com/post"]
        assert sources[0]["source"]["metrics"]["sourceAuthority"] == 0.9
        assert sources[0]["currentDepth"] == 1

        state = _annotations(events, "research-state")[-1]
        assert state["isActive"] is True
        assert state["currentDepth"] == 1
        assert len(state["sources"]) == 2
        assert all("label" in s for s in state["sources"])

    @pytest.mark.asyncio
    async def test_related_questions_placeholder_then_items(self, fake_redis, related):
        turn = ChatTurn(
            chat_id="chat-1",
            messages=MESSAGES,
            model="openai:gpt-4o-mini",
            search_mode=True,
            researcher=ScriptedResearcher(_search_turn_events()),
        )
        events = await _run(turn)

        related_frames = _annotations(events, "related-questions")
        assert related_frames == [{"items": []}, {"items": [{"query": "What about wind?"}]}]
        related.assert_awaited_once()
        # related-questions usage is not part of the turn's usage
        assert events[-1].prompt_tokens == 12

    @pytest.mark.asyncio
    async def test_transcript_and_research_are_persisted(self, fake_redis, related):
        turn = ChatTurn(
            chat_id="chat-1",
            messages=MESSAGES,
            model="openai:gpt-4o-mini",
            search_mode=True,
            researcher=ScriptedResearcher(_search_turn_events()),
        )
        await _run(turn)

        chat = await db.get_chat("chat-1")
        assert chat["title"] == MESSAGES[0]["content"]
        assert chat["userId"] == settings.default_user_id
        assistant = chat["messages"][-1]
        assert assistant["role"] == "assistant"
        assert assistant["content"] == "Let me search.\nSolar is growing."
        assert assistant["annotations"][-1]["type"] == "related-questions"

        session = await db.load_research_session("chat-1")
        assert session.is_active is False
        assert session.current_depth == 1
        assert len(session.sources) == 2
        assert session.completed_steps == 1
        assert all(a.status != ActivityStatus.PENDING for a in session.activity)

    @pytest.mark.asyncio
    async def test_usage_is_tracked(self, fake_redis, related):
        turn = ChatTurn(
            chat_id="chat-1",
            messages=MESSAGES,
            model="openai:gpt-4o-mini",
            search_mode=True,
            researcher=ScriptedResearcher(_search_turn_events()),
        )
        await _run(turn)

        usage = await UsageTracker(settings.default_user_id).get_model_usage("openai:gpt-4o-mini")
        assert (usage.prompt_tokens, usage.completion_tokens, usage.total_tokens) == (12, 5, 17)

    @pytest.mark.asyncio
    async def test_usage_is_not_reported_by_default(self, fake_redis, related):
        turn = ChatTurn(
            chat_id="chat-1",
            messages=MESSAGES,
            model="openai:gpt-4o-mini",
            search_mode=True,
            researcher=ScriptedResearcher(_search_turn_events()),
        )
        with patch("depthwise.agents.orchestrator.httpx.AsyncClient") as http:
            await _run(turn)
        assert settings.usage_report_url == ""
        http.assert_not_called()

    @pytest.mark.asyncio
    async def test_usage_is_reported_to_accounting_endpoint(self, fake_redis, related):
        turn = ChatTurn(
            chat_id="chat-1",
            messages=MESSAGES,
            model="openai:gpt-4o-mini",
            search_mode=True,
            researcher=ScriptedResearcher(_search_turn_events()),
        )
        with patch.object(settings, "usage_report_url", "https://accounting.example/usage"), patch(
            "depthwise.agents.orchestrator.httpx.AsyncClient"
        ) as http:
            post = http.return_value.__aenter__.return_value.post
            post.return_value = MagicMock()
            await _run(turn)

        post.assert_awaited_once()
        assert post.await_args.args[0] == "https://accounting.example/usage"
        body = post.await_args.kwargs["json"]
        assert body["chatId"] == "chat-1"
        assert body["usage"]["totalTokens"] == 17
        assert body["finishReason"] == "stop"

    @pytest.mark.asyncio
    async def test_cleared_session_is_left_alone(self, fake_redis, related):
        await db.set_research_cleared("chat-1", True)
        turn = ChatTurn(
            chat_id="chat-1",
            messages=MESSAGES,
            model="openai:gpt-4o-mini",
            search_mode=True,
            researcher=ScriptedResearcher(_search_turn_events()),
        )
        events = await _run(turn)

        assert _annotations(events, "research-source") == []
        assert _annotations(events, "research-activity") == []
        session = await db.load_research_session("chat-1")
        assert session.is_cleared is True
        assert session.sources == []


class TestCharts:
    @pytest.mark.asyncio
    async def test_chart_is_streamed_and_stripped_from_transcript(self, fake_redis, monkeypatch):
        monkeypatch.setattr(settings, "related_questions_enabled", False)
        body = json.dumps(CHART)
        researcher = ScriptedResearcher(
            [
                TextChunk("Capacity by year:\n<chart_data>\n"),
                TextChunk(body + "\n</chart_data>\n"),
                TextChunk("Done."),
                FinishChunk("stop"),
            ]
        )
        turn = ChatTurn(
            chat_id="chat-2", messages=MESSAGES, model="openai:gpt-4o-mini", search_mode=False, researcher=researcher
        )
        events = await _run(turn)

        charts = _annotations(events, "chart")
        assert len(charts) == 1
        assert charts[0]["datasets"][0]["data"] == [300, 450]
        assert _annotations(events, "related-questions") == []
        streamed = "".join(e.text for e in events if isinstance(e, TextDelta))
        assert "<chart_data>" not in streamed

        assistant = (await db.get_chat("chat-2"))["messages"][-1]
        assert "<chart_data>" not in assistant["content"]
        assert assistant["annotations"][0]["type"] == "chart"

    @pytest.mark.asyncio
    async def test_reasoning_model_skips_related_questions(self, fake_redis, related):
        researcher = ScriptedResearcher([TextChunk("Answer."), FinishChunk("stop")])
        turn = ChatTurn(
            chat_id="chat-3", messages=MESSAGES, model="deepseek:deepseek-r1", search_mode=False, researcher=researcher
        )
        events = await _run(turn)
        assert _annotations(events, "related-questions") == []
        related.assert_not_awaited()


class TestFailures:
    @pytest.mark.asyncio
    async def test_prepare_raises_before_any_output(self, fake_redis):
        researcher = ScriptedResearcher([RuntimeError("model unavailable")])
        turn = ChatTurn(
            chat_id="chat-1", messages=MESSAGES, model="openai:gpt-4o-mini", search_mode=False, researcher=researcher
        )
        with pytest.raises(RuntimeError, match="model unavailable"):
            await turn.prepare()

    @pytest.mark.asyncio
    async def test_mid_stream_error_ends_with_error_finish(self, fake_redis, related):
        researcher = ScriptedResearcher([TextChunk("Partial answer\n"), RuntimeError("model exploded")])
        turn = ChatTurn(
            chat_id="chat-1", messages=MESSAGES, model="openai:gpt-4o-mini", search_mode=False, researcher=researcher
        )
        events = await _run(turn)

        assert events[0] == TextDelta(text="Partial answer\n")
        assert ErrorEvent(message="model exploded") in events
        assert isinstance(events[-1], Finish)
        assert events[-1].finish_reason == FinishReason.ERROR
        assert await db.get_chat("chat-1") is None
        related.assert_not_awaited()

        usage = await UsageTracker(settings.default_user_id).get_model_usage("openai:gpt-4o-mini")
        assert usage.completion_tokens > 0

    @pytest.mark.asyncio
    async def test_save_failure_emits_error_frame(self, fake_redis, related):
        researcher = ScriptedResearcher([TextChunk("Answer."), FinishChunk("stop")])
        turn = ChatTurn(
            chat_id="chat-1", messages=MESSAGES, model="openai:gpt-4o-mini", search_mode=False, researcher=researcher
        )
        with patch("depthwise.agents.orchestrator.db.save_chat", AsyncMock(side_effect=StorageError("down"))):
            events = await _run(turn)

        assert ErrorEvent(message="Failed to save chat history") in events
        assert events[-1].finish_reason == FinishReason.ERROR

    @pytest.mark.asyncio
    async def test_usage_tracking_failure_does_not_break_stream(self, fake_redis, related):
        researcher = ScriptedResearcher([TextChunk("Answer."), FinishChunk("length")])
        turn = ChatTurn(
            chat_id="chat-1", messages=MESSAGES, model="openai:gpt-4o-mini", search_mode=False, researcher=researcher
        )
        with patch.object(UsageTracker, "track_usage", AsyncMock(side_effect=StorageError("down"))):
            events = await _run(turn)

        assert events[-1].finish_reason == FinishReason.LENGTH


class TestCancellation:
    @pytest.mark.asyncio
    async def test_closing_the_stream_skips_persistence(self, fake_redis, related):
        researcher = ScriptedResearcher(_search_turn_events())
        turn = ChatTurn(
            chat_id="chat-1", messages=MESSAGES, model="openai:gpt-4o-mini", search_mode=True, researcher=researcher
        )
        stream = turn.stream()
        first = await anext(stream)
        await stream.aclose()

        assert first.startswith("0:")
        assert turn.cancelled is True
        assert researcher.closed is True
        assert await db.get_chat("chat-1") is None

    @pytest.mark.asyncio
    async def test_disconnected_client_stops_consumption(self, fake_redis, related):
        researcher = ScriptedResearcher(_search_turn_events())
        turn = ChatTurn(
            chat_id="chat-1",
            messages=MESSAGES,
            model="openai:gpt-4o-mini",
            search_mode=True,
            researcher=researcher,
            is_disconnected=AsyncMock(return_value=True),
        )
        frames = [frame async for frame in turn.stream()]

        assert frames == []
        assert turn.cancelled is True
        assert researcher.closed is True
        assert await db.get_chat("chat-1") is None


@pytest.mark.asyncio
async def test_history_is_truncated_before_the_model_sees_it(fake_redis, monkeypatch):
    monkeypatch.setattr(settings, "max_context_tokens", 10)
    monkeypatch.setattr(settings, "related_questions_enabled", False)
    history = [
        {"role": "user", "content": "x" * 200},
        {"role": "assistant", "content": "y" * 200},
        {"role": "user", "content": "short question"},
    ]
    researcher = ScriptedResearcher([TextChunk("ok"), FinishChunk("stop")])
    turn = ChatTurn(chat_id="chat-9", messages=history, model="openai:gpt-4o-mini", search_mode=False, researcher=researcher)
    await _run(turn)

    assert researcher.received == [history[-1]]
