"""Per-user token accounting stored in a Redis hash (``usage:{user_id}``)."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from redis.exceptions import RedisError

from depthwise.exceptions import StorageError
from depthwise.models.events import FinishReason
from depthwise.models.research import now_ms
from depthwise.services import database
from depthwise.services import logger as log_service

USER_USAGE_PREFIX = "usage:"


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: TokenUsage) -> None:
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TokenUsage:
        data = data or {}
        prompt = int(data.get("promptTokens", 0))
        completion = int(data.get("completionTokens", 0))
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=int(data.get("totalTokens", prompt + completion)),
        )


def _empty_usage(user_id: str) -> dict[str, Any]:
    return {
        "userId": user_id,
        "totalUsage": TokenUsage().to_dict(),
        "modelUsage": {},
        "lastUpdated": now_ms(),
    }


class UsageTracker:
    def __init__(self, user_id: str):
        if not user_id:
            raise ValueError("user_id is required")
        self.user_id = user_id

    @property
    def key(self) -> str:
        return f"{USER_USAGE_PREFIX}{self.user_id}"

    async def get_user_usage(self) -> dict[str, Any]:
        try:
            data = await database.get_redis().hgetall(self.key)
        except RedisError as e:
            log_service.log_db_operation("get_user_usage", self.key, "failed", error=str(e))
            raise StorageError("Failed to read usage") from e
        if not data or not data.get("userId"):
            return _empty_usage(self.user_id)
        try:
            return {
                "userId": data["userId"],
                "totalUsage": json.loads(data.get("totalUsage") or "{}"),
                "modelUsage": json.loads(data.get("modelUsage") or "{}"),
                "lastUpdated": int(data.get("lastUpdated") or 0),
            }
        except (json.JSONDecodeError, ValueError) as e:
            log_service.logger.warning(f"Corrupt usage record for {self.user_id}: {e}")
            return _empty_usage(self.user_id)

    async def track_usage(
        self,
        *,
        model: str,
        chat_id: str,
        usage: TokenUsage,
        finish_reason: FinishReason | str = FinishReason.STOP,
    ) -> dict[str, Any]:
        """Add one turn's usage to the user total and to the model's total and history."""
        if not model:
            raise ValueError("model is required")
        if not chat_id:
            raise ValueError("chat_id is required")

        current = await self.get_user_usage()
        model_usage = current["modelUsage"].setdefault(
            model,
            {"model": model, "totalUsage": TokenUsage().to_dict(), "usageHistory": []},
        )

        total = TokenUsage.from_dict(current["totalUsage"])
        total.add(usage)
        current["totalUsage"] = total.to_dict()

        per_model = TokenUsage.from_dict(model_usage["totalUsage"])
        per_model.add(usage)
        model_usage["totalUsage"] = per_model.to_dict()
        model_usage["usageHistory"].insert(
            0,
            {
                "finishReason": str(FinishReason.normalize(str(finish_reason))),
                "usage": usage.to_dict(),
                "timestamp": now_ms(),
                "model": model,
                "chatId": chat_id,
            },
        )
        current["lastUpdated"] = now_ms()

        try:
            await database.get_redis().hset(
                self.key,
                mapping={
                    "userId": self.user_id,
                    "totalUsage": json.dumps(current["totalUsage"]),
                    "modelUsage": json.dumps(current["modelUsage"]),
                    "lastUpdated": str(current["lastUpdated"]),
                },
            )
        except RedisError as e:
            log_service.log_db_operation("track_usage", self.key, "failed", error=str(e))
            raise StorageError("Failed to track usage") from e

        log_service.log_event(
            "usage_tracked",
            "Usage recorded",
            user_id=self.user_id,
            model=model,
            chat_id=chat_id,
            total_tokens=usage.total_tokens,
        )
        return current

    async def get_model_usage(self, model: str) -> TokenUsage:
        if not model:
            raise ValueError("model is required")
        data = await self.get_user_usage()
        entry = data["modelUsage"].get(model)
        return TokenUsage.from_dict(entry["totalUsage"]) if entry else TokenUsage()

    async def get_analytics(self, start_ms: int, end_ms: int) -> dict[str, Any]:
        """Usage inside a time window, broken down by model and averaged per chat."""
        data = await self.get_user_usage()
        total = TokenUsage()
        breakdown: dict[str, dict[str, int]] = {}
        chats: set[str] = set()

        for model, entry in data["modelUsage"].items():
            model_total = TokenUsage()
            for item in entry.get("usageHistory", []):
                if not start_ms <= int(item.get("timestamp", 0)) <= end_ms:
                    continue
                model_total.add(TokenUsage.from_dict(item.get("usage")))
                chats.add(item.get("chatId", ""))
            if model_total.total_tokens:
                breakdown[model] = model_total.to_dict()
            total.add(model_total)

        n = max(len(chats), 1)
        average = TokenUsage(
            prompt_tokens=total.prompt_tokens // n,
            completion_tokens=total.completion_tokens // n,
            total_tokens=total.total_tokens // n,
        )
        return {
            "timeRange": {"start": start_ms, "end": end_ms},
            "totalUsage": total.to_dict(),
            "averageUsagePerChat": average.to_dict(),
            "modelBreakdown": breakdown,
        }
