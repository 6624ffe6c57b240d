"""Tests for API routes."""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from redis.exceptions import ConnectionError as RedisConnectionError

from depthwise.config import settings
from depthwise.exceptions import StorageError
from depthwise.models.research import ResearchSession, Source, SourceMetrics

CHAT_BODY = {"id": "chat-1", "messages": [{"role": "user", "content": "What is new in fusion?"}]}


@pytest.fixture
def app():
    from depthwise.main import app

    return app


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app)


class FakeTurn:
    """Replaces ChatTurn so routes can be exercised without a model."""

    created = []
    fail_prepare = False

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        FakeTurn.created.append(self)

    async def prepare(self):
        if FakeTurn.fail_prepare:
            raise RuntimeError("upstream model unavailable")

    async def stream(self):
        yield '0:"Fusion "\n'
        yield '0:"news."\n'
        yield 'd:{"finishReason":"stop","usage":{"promptTokens":3,"completionTokens":2}}\n'


@pytest.fixture
def fake_turn():
    FakeTurn.created = []
    FakeTurn.fail_prepare = False
    with patch("depthwise.api.routes.chat.ChatTurn", FakeTurn):
        yield FakeTurn


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "depthwise"


def test_list_models(client):
    response = client.get("/api/models")
    assert response.status_code == 200
    data = response.json()
    model_ids = [m["id"] for m in data["models"]]
    assert "openai:gpt-4o-mini" in model_ids
    assert "deepseek:deepseek-r1" in model_ids
    r1 = next(m for m in data["models"] if m["id"] == "deepseek:deepseek-r1")
    assert r1["tool_calls"] is False
    assert r1["reasoning"] is True


class TestChatRoute:
    def test_streams_frames(self, client, fake_turn):
        client.cookies.set("search-mode", "true")
        response = client.post("/api/chat", json=CHAT_BODY)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.text.splitlines() == [
            '0:"Fusion "',
            '0:"news."',
            'd:{"finishReason":"stop","usage":{"promptTokens":3,"completionTokens":2}}',
        ]
        turn = fake_turn.created[0]
        assert turn.kwargs["chat_id"] == "chat-1"
        assert turn.kwargs["search_mode"] is True
        assert turn.kwargs["model"] == settings.default_model
        assert turn.kwargs["messages"] == CHAT_BODY["messages"]

    def test_selected_model_cookie(self, client, fake_turn):
        client.cookies.set("selected-model", "anthropic:claude-3-5-sonnet-latest")
        client.post("/api/chat", json=CHAT_BODY)
        assert fake_turn.created[0].kwargs["model"] == "anthropic:claude-3-5-sonnet-latest"
        assert fake_turn.created[0].kwargs["search_mode"] is False

    def test_share_page_is_forbidden(self, client, fake_turn):
        response = client.post(
            "/api/chat", json=CHAT_BODY, headers={"referer": "http://localhost:3000/share/abc"}
        )
        assert response.status_code == 403
        assert fake_turn.created == []

    def test_disabled_provider(self, client, fake_turn):
        client.cookies.set("selected-model", "foo:bar")
        response = client.post("/api/chat", json=CHAT_BODY)
        assert response.status_code == 404
        assert response.text == "Selected provider is not enabled foo"

    def test_failure_before_streaming_is_a_json_500(self, client, fake_turn):
        fake_turn.fail_prepare = True
        response = client.post("/api/chat", json=CHAT_BODY)
        assert response.status_code == 500
        assert response.json() == {"error": "upstream model unavailable", "status": 500}

    def test_empty_messages_rejected(self, client, fake_turn):
        response = client.post("/api/chat", json={"id": "chat-1", "messages": []})
        assert response.status_code == 422


class TestResearchRoutes:
    def test_get_research_state(self, client):
        metrics = SourceMetrics(0.9, 1, 0.8, 0.5, 0.9)
        session = ResearchSession(
            "chat-1",
            current_depth=1,
            is_active=True,
            sources=[Source(url="https://a.edu", title="A", relevance=0.9, timestamp=1, metrics=metrics)],
            source_metrics=[metrics],
        )
        with patch("depthwise.services.database.load_research_session", AsyncMock(return_value=session)):
            response = client.get("/api/chats/chat-1/research")

        assert response.status_code == 200
        data = response.json()
        assert data["currentDepth"] == 1
        assert data["isActive"] is True
        assert data["sources"][0]["label"] in ("excellent", "good")

    def test_blank_chat_id(self, client):
        assert client.get("/api/chats/%20/research").status_code == 400
        assert client.put("/api/chats/%20/research", json={"isCleared": True}).status_code == 400

    def test_get_storage_failure(self, client):
        with patch(
            "depthwise.services.database.load_research_session", AsyncMock(side_effect=StorageError("down"))
        ):
            response = client.get("/api/chats/chat-1/research")
        assert response.status_code == 500
        assert response.json() == {"error": "Failed to get research state"}

    def test_clear_research(self, client):
        with patch("depthwise.services.database.set_research_cleared", AsyncMock()) as set_cleared:
            response = client.put("/api/chats/chat-1/research", json={"isCleared": True})

        assert response.status_code == 200
        assert response.json() == {"success": True}
        set_cleared.assert_awaited_once_with("chat-1", True)

    def test_is_cleared_required(self, client):
        response = client.put("/api/chats/chat-1/research", json={})
        assert response.status_code == 400

    def test_set_max_depth(self, client):
        session = ResearchSession("chat-1", current_depth=2, max_depth=7, is_active=True)
        with patch(
            "depthwise.services.database.load_research_session", AsyncMock(return_value=session)
        ), patch("depthwise.services.database.save_research_session", AsyncMock()) as save:
            response = client.put("/api/chats/chat-1/research", json={"maxDepth": 4})

        assert response.status_code == 200
        saved = save.await_args.args[0]
        assert saved.max_depth == 4
        assert saved.current_depth == 2

    def test_max_depth_is_clamped_and_never_below_current(self, client):
        session = ResearchSession("chat-1", current_depth=3, max_depth=7, is_active=True)
        with patch(
            "depthwise.services.database.load_research_session", AsyncMock(return_value=session)
        ), patch("depthwise.services.database.save_research_session", AsyncMock()) as save:
            client.put("/api/chats/chat-1/research", json={"maxDepth": 1})
            lowered = save.await_args.args[0]
            client.put("/api/chats/chat-1/research", json={"maxDepth": 50})
            raised = save.await_args.args[0]

        assert lowered.max_depth == 3
        assert raised.max_depth == 10

    def test_raising_max_depth_lets_research_advance(self, client):
        metrics = [SourceMetrics(0.9, 1, 0.8, 0.5, 0.9) for _ in range(5)]
        session = ResearchSession(
            "chat-1",
            current_depth=1,
            max_depth=1,
            is_active=True,
            sources=[Source(url=f"https://a{i}.edu", title="A", relevance=0.9, timestamp=i) for i in range(5)],
            source_metrics=metrics,
        )
        with patch(
            "depthwise.services.database.load_research_session", AsyncMock(return_value=session)
        ), patch("depthwise.services.database.save_research_session", AsyncMock()) as save:
            response = client.put("/api/chats/chat-1/research", json={"maxDepth": 3})

        assert response.status_code == 200
        saved = save.await_args.args[0]
        assert saved.max_depth == 3
        assert saved.current_depth == 2

    def test_max_depth_on_cleared_research_is_rejected(self, client):
        session = ResearchSession("chat-1", is_cleared=True)
        with patch(
            "depthwise.services.database.load_research_session", AsyncMock(return_value=session)
        ), patch("depthwise.services.database.save_research_session", AsyncMock()) as save:
            response = client.put("/api/chats/chat-1/research", json={"maxDepth": 4})

        assert response.status_code == 409
        save.assert_not_awaited()


class TestChatRoutes:
    def test_list_chats(self, client):
        chats = [{"id": "c2", "title": "new", "messages": []}]
        with patch("depthwise.services.database.get_chats", AsyncMock(return_value=chats)):
            response = client.get("/api/chats")
        assert response.json() == {"chats": chats}

    def test_missing_chat(self, client):
        with patch("depthwise.services.database.get_chat", AsyncMock(return_value=None)):
            assert client.get("/api/chats/nope").status_code == 404

    def test_delete_chat(self, client):
        with patch("depthwise.services.database.delete_chat", AsyncMock(return_value=True)):
            response = client.delete("/api/chats/c1")
        assert response.json() == {"success": True}

    def test_storage_failure_is_a_500(self, client):
        with patch("depthwise.services.database.get_chats", AsyncMock(side_effect=StorageError("down"))):
            response = client.get("/api/chats")
        assert response.status_code == 500
        assert response.json()["error"] == "Storage unavailable"


class TestUsageRoutes:
    def test_missing_fields(self, client):
        response = client.post("/api/usage", json={"model": "openai:gpt-4o-mini"})
        assert response.status_code == 400
        assert response.text == "Missing required fields"

    def test_track_usage(self, client):
        body = {
            "model": "openai:gpt-4o-mini",
            "chatId": "chat-1",
            "usage": {"promptTokens": 10, "completionTokens": 5},
            "finishReason": "stop",
        }
        with patch(
            "depthwise.api.routes.usage.UsageTracker.track_usage", AsyncMock(return_value={})
        ) as track:
            response = client.post("/api/usage", json=body)

        assert response.status_code == 200
        assert response.text == "OK"
        kwargs = track.await_args.kwargs
        assert kwargs["chat_id"] == "chat-1"
        assert kwargs["usage"].total_tokens == 15

    def test_track_usage_failure(self, client):
        body = {"model": "m:x", "chatId": "c", "usage": {"promptTokens": 1, "completionTokens": 1}}
        with patch(
            "depthwise.api.routes.usage.UsageTracker.track_usage", AsyncMock(side_effect=StorageError("down"))
        ):
            response = client.post("/api/usage", json=body)
        assert response.status_code == 500

    def test_get_usage(self, client):
        data = {"userId": "anonymous", "totalUsage": {}, "modelUsage": {}, "lastUpdated": 1}
        with patch("depthwise.api.routes.usage.UsageTracker.get_user_usage", AsyncMock(return_value=data)):
            response = client.get("/api/usage")
        assert response.json() == data

    def test_get_usage_store_failure(self, client):
        redis_client = MagicMock()
        redis_client.hgetall = AsyncMock(side_effect=RedisConnectionError("down"))
        with patch("depthwise.services.database.get_redis", return_value=redis_client):
            response = client.get("/api/usage")
        assert response.status_code == 500
        assert response.json()["error"] == "Storage unavailable"
