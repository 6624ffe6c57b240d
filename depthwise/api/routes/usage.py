from __future__ import annotations

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse, PlainTextResponse

from depthwise.config import settings
from depthwise.exceptions import StorageError
from depthwise.models.research import now_ms
from depthwise.models.schemas import UsageRequest
from depthwise.services import logger as log_service
from depthwise.services.usage_tracker import TokenUsage, UsageTracker

router = APIRouter(prefix="/api/usage", tags=["usage"])

DAY_MS = 24 * 60 * 60 * 1000


@router.get("")
async def get_usage():
    return await UsageTracker(settings.default_user_id).get_user_usage()


@router.get("/analytics")
async def get_usage_analytics(
    start: int | None = Query(default=None, description="Window start, epoch ms"),
    end: int | None = Query(default=None, description="Window end, epoch ms"),
):
    end = end or now_ms()
    start = start if start is not None else end - 30 * DAY_MS
    return await UsageTracker(settings.default_user_id).get_analytics(start, end)


@router.post("")
async def track_usage(body: UsageRequest):
    if not body.model or not body.chat_id or body.usage is None:
        return PlainTextResponse("Missing required fields", status_code=400)

    usage = TokenUsage(
        prompt_tokens=body.usage.prompt_tokens,
        completion_tokens=body.usage.completion_tokens,
        total_tokens=(
            body.usage.total_tokens
            if body.usage.total_tokens is not None
            else body.usage.prompt_tokens + body.usage.completion_tokens
        ),
    )
    try:
        await UsageTracker(settings.default_user_id).track_usage(
            model=body.model,
            chat_id=body.chat_id,
            usage=usage,
            finish_reason=body.finish_reason or "stop",
        )
    except (StorageError, ValueError) as e:
        log_service.logger.error(f"POST /api/usage failed: {e}")
        return JSONResponse({"error": "Failed to track usage"}, status_code=500)
    return PlainTextResponse("OK")
