"""Redis-backed storage for chats and research sessions."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from depthwise.config import settings
from depthwise.exceptions import StorageError
from depthwise.models.research import (
    Activity,
    ResearchSession,
    Source,
    clamp_max_depth,
    now_ms,
)
from depthwise.services import logger as log_service

CHAT_VERSION = "v2"

_client: redis.Redis | None = None


def get_redis() -> redis.Redis:
    """Get or create the shared Redis client."""
    global _client
    if _client is None:
        _client = redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    return _client


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


def chat_key(chat_id: str) -> str:
    return f"chat:{chat_id}"


def user_chat_key(user_id: str) -> str:
    return f"user:{CHAT_VERSION}:chat:{user_id}"


def research_state_key(chat_id: str) -> str:
    return f"chat:{chat_id}:research:state"


def research_activities_key(chat_id: str) -> str:
    return f"chat:{chat_id}:research:activities"


def research_sources_key(chat_id: str) -> str:
    return f"chat:{chat_id}:research:sources"


@asynccontextmanager
async def _guard(operation: str, key: str):
    try:
        yield
    except RedisError as e:
        log_service.log_db_operation(operation, key, "failed", error=str(e))
        raise StorageError(f"{operation} failed for {key}: {e}") from e


def _to_bool(value: Any) -> bool:
    return str(value).lower() in ("true", "1")


def _parse_json_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []


# --- Chats ---


def _decode_chat(raw: dict[str, str]) -> dict[str, Any]:
    chat: dict[str, Any] = dict(raw)
    messages = _parse_json_list(raw.get("messages"))
    if raw.get("messages") and not messages:
        log_service.logger.warning(f"Unreadable messages for chat {raw.get('id')}")
    chat["messages"] = messages
    if "createdAt" in chat:
        chat["createdAt"] = int(chat["createdAt"] or 0)
    return chat


async def save_chat(chat: dict[str, Any], user_id: str | None = None) -> None:
    """Store a chat and index it under its user, newest first."""
    user_id = user_id or chat.get("userId") or settings.default_user_id
    key = chat_key(chat["id"])
    mapping = {
        "id": chat["id"],
        "title": chat.get("title", ""),
        "userId": user_id,
        "path": chat.get("path", f"/search/{chat['id']}"),
        "createdAt": str(chat.get("createdAt") or now_ms()),
        "messages": json.dumps(chat.get("messages", []), ensure_ascii=False),
    }
    if chat.get("sharePath"):
        mapping["sharePath"] = chat["sharePath"]

    async with _guard("save_chat", key):
        pipe = get_redis().pipeline()
        pipe.hset(key, mapping=mapping)
        pipe.zadd(user_chat_key(user_id), {key: now_ms()})
        await pipe.execute()
    log_service.log_db_operation("save_chat", key, "success", details=f"{len(chat.get('messages', []))} messages")


async def get_chat(chat_id: str) -> dict[str, Any] | None:
    key = chat_key(chat_id)
    async with _guard("get_chat", key):
        raw = await get_redis().hgetall(key)
    if not raw:
        return None
    return _decode_chat(raw)


async def get_chats(user_id: str) -> list[dict[str, Any]]:
    """All chats for a user, most recently saved first."""
    key = user_chat_key(user_id)
    async with _guard("get_chats", key):
        client = get_redis()
        chat_keys = await client.zrange(key, 0, -1, desc=True)
        if not chat_keys:
            return []
        pipe = client.pipeline()
        for k in chat_keys:
            pipe.hgetall(k)
        results = await pipe.execute()
    return [_decode_chat(raw) for raw in results if raw]


async def delete_chat(chat_id: str, user_id: str) -> bool:
    """Remove a chat, its index entry and its research keys."""
    key = chat_key(chat_id)
    async with _guard("delete_chat", key):
        pipe = get_redis().pipeline()
        pipe.delete(key)
        pipe.zrem(user_chat_key(user_id), key)
        pipe.delete(
            research_state_key(chat_id),
            research_activities_key(chat_id),
            research_sources_key(chat_id),
        )
        deleted, _, _ = await pipe.execute()
    log_service.log_db_operation("delete_chat", key, "success")
    return bool(deleted)


# --- Research ---


def _state_fields(session: ResearchSession) -> dict[str, str]:
    return {
        "isActive": str(session.is_active).lower(),
        "isCleared": str(session.is_cleared).lower(),
        "currentDepth": str(session.current_depth),
        "maxDepth": str(session.max_depth),
        "completedSteps": str(session.completed_steps),
        "totalExpectedSteps": str(session.total_expected_steps),
        "depthScores": json.dumps({str(k): v for k, v in session.depth_scores.items()}),
        "adaptiveThreshold": str(session.adaptive_threshold),
        "minRelevanceScore": str(session.min_relevance_score),
    }


def _decode_depth_scores(raw: str | None) -> dict[int, float]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if not isinstance(parsed, dict):
        return {}
    return {int(k): float(v) for k, v in parsed.items()}


async def load_research_session(chat_id: str, max_depth: int | None = None) -> ResearchSession:
    """Load a chat's research session; a missing one starts idle."""
    default_max = clamp_max_depth(max_depth or settings.research_max_depth)
    async with _guard("load_research", research_state_key(chat_id)):
        pipe = get_redis().pipeline()
        pipe.hgetall(research_state_key(chat_id))
        pipe.lrange(research_activities_key(chat_id), 0, -1)
        pipe.lrange(research_sources_key(chat_id), 0, -1)
        state, raw_activities, raw_sources = await pipe.execute()

    if not state:
        return ResearchSession(chat_id=chat_id, max_depth=default_max)

    if _to_bool(state.get("isCleared")):
        return ResearchSession(
            chat_id=chat_id,
            max_depth=clamp_max_depth(state.get("maxDepth") or default_max),
            is_cleared=True,
            cleared_at=state.get("clearedAt") or None,
        )

    activity = [Activity.from_dict(json.loads(a)) for a in raw_activities]
    sources = [Source.from_dict(json.loads(s)) for s in raw_sources]
    return ResearchSession(
        chat_id=chat_id,
        current_depth=int(state.get("currentDepth") or 0),
        max_depth=clamp_max_depth(state.get("maxDepth") or default_max),
        is_active=_to_bool(state.get("isActive")),
        completed_steps=int(state.get("completedSteps") or 0),
        total_expected_steps=int(state.get("totalExpectedSteps") or 0),
        depth_scores=_decode_depth_scores(state.get("depthScores")),
        adaptive_threshold=float(state.get("adaptiveThreshold") or 0.7),
        min_relevance_score=float(state.get("minRelevanceScore") or 0.6),
        activity=activity,
        sources=sources,
        source_metrics=[s.metrics for s in sources if s.metrics is not None],
    )


async def save_research_session(session: ResearchSession) -> None:
    """Overwrite the stored session with this one."""
    state_key = research_state_key(session.chat_id)
    activities_key = research_activities_key(session.chat_id)
    sources_key = research_sources_key(session.chat_id)

    async with _guard("save_research", state_key):
        pipe = get_redis().pipeline(transaction=True)
        pipe.hset(state_key, mapping=_state_fields(session))
        if session.cleared_at:
            pipe.hset(state_key, "clearedAt", session.cleared_at)
        else:
            pipe.hdel(state_key, "clearedAt")
        pipe.delete(activities_key, sources_key)
        if session.activity:
            pipe.rpush(activities_key, *[json.dumps(a.to_dict()) for a in session.activity])
        if session.sources:
            pipe.rpush(sources_key, *[json.dumps(s.to_dict()) for s in session.sources])
        await pipe.execute()

    log_service.log_db_operation(
        "save_research",
        state_key,
        "success",
        details=f"depth={session.current_depth} sources={len(session.sources)}",
    )


async def set_research_cleared(chat_id: str, is_cleared: bool, cleared_at: str | None = None) -> None:
    """Clear (dropping activity and sources) or reactivate a chat's research."""
    state_key = research_state_key(chat_id)
    async with _guard("set_research_cleared", state_key):
        pipe = get_redis().pipeline(transaction=True)
        if is_cleared:
            pipe.hset(
                state_key,
                mapping={
                    "isCleared": "true",
                    "isActive": "false",
                    "currentDepth": "0",
                    "completedSteps": "0",
                    "totalExpectedSteps": "0",
                    "depthScores": "{}",
                    "clearedAt": cleared_at or datetime.now(timezone.utc).isoformat(),
                },
            )
            pipe.delete(research_activities_key(chat_id), research_sources_key(chat_id))
        else:
            pipe.hset(state_key, "isCleared", "false")
            pipe.hdel(state_key, "clearedAt")
        await pipe.execute()
    log_service.log_db_operation("set_research_cleared", state_key, "success", details=f"isCleared={is_cleared}")
