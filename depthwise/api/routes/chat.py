from __future__ import annotations

from fastapi import APIRouter, Cookie, Request
from fastapi.responses import JSONResponse, StreamingResponse

from depthwise.agents.orchestrator import ChatTurn
from depthwise.config import settings
from depthwise.exceptions import ForbiddenContextError, ProviderDisabledError
from depthwise.models.schemas import ChatRequest
from depthwise.services import logger as log_service
from depthwise.services.registry import is_provider_enabled, parse_model_id

router = APIRouter(prefix="/api/chat", tags=["chat"])

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.post("")
async def chat(
    request: Request,
    body: ChatRequest,
    selected_model: str | None = Cookie(default=None, alias="selected-model"),
    search_mode: str | None = Cookie(default=None, alias="search-mode"),
):
    """Run one chat turn and stream it back as protocol frames."""
    if "/share/" in request.headers.get("referer", ""):
        raise ForbiddenContextError("Chat API is not available on share pages")

    model = selected_model or settings.default_model
    provider, _ = parse_model_id(model)
    if not is_provider_enabled(provider):
        raise ProviderDisabledError(provider)

    turn = ChatTurn(
        chat_id=body.id,
        messages=[m.model_dump(exclude_none=True) for m in body.messages],
        model=model,
        search_mode=search_mode == "true",
        is_disconnected=request.is_disconnected,
    )
    try:
        await turn.prepare()
    except Exception as e:
        log_service.logger.exception(f"Chat turn {body.id} failed before streaming: {e}")
        return JSONResponse(
            {"error": str(e) or "An unexpected error occurred", "status": 500},
            status_code=500,
        )

    return StreamingResponse(turn.stream(), media_type="text/event-stream", headers=STREAM_HEADERS)
