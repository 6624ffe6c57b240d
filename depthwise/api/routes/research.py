from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from depthwise.exceptions import StorageError
from depthwise.models.schemas import ResearchUpdateRequest, SuccessResponse
from depthwise.services import database as db
from depthwise.services import depth
from depthwise.services.depth import DepthController, OptimizeDepth, SetDepth
from depthwise.services.logger import logger

router = APIRouter(prefix="/api/chats", tags=["research"])


@router.get("/{chat_id}/research")
async def get_research_state(chat_id: str):
    if not chat_id.strip():
        return JSONResponse({"error": "Chat ID is required"}, status_code=400)
    try:
        session = await db.load_research_session(chat_id)
    except StorageError as e:
        logger.error(f"Failed to get research state for {chat_id}: {e}")
        return JSONResponse({"error": "Failed to get research state"}, status_code=500)
    return depth.snapshot(session)


async def _set_max_depth(chat_id: str, max_depth: int) -> bool:
    """Change the depth limit; raising it may let the current depth advance."""
    session = await db.load_research_session(chat_id)
    controller = DepthController(session)
    if not await controller.dispatch(SetDepth(current=session.current_depth, max=max_depth)):
        return False
    await controller.dispatch(OptimizeDepth())
    await db.save_research_session(controller.session)
    return True


@router.put("/{chat_id}/research", response_model=SuccessResponse)
async def update_research_state(chat_id: str, body: ResearchUpdateRequest):
    """Clear a chat's research (drops activity and sources), reactivate it, or set its max depth."""
    if not chat_id.strip():
        return JSONResponse({"error": "Invalid chat ID format"}, status_code=400)
    if body.is_cleared is None and body.max_depth is None:
        return JSONResponse({"error": "isCleared or maxDepth is required"}, status_code=400)
    try:
        if body.is_cleared is not None:
            await db.set_research_cleared(chat_id, body.is_cleared)
        if body.max_depth is not None and not await _set_max_depth(chat_id, body.max_depth):
            return JSONResponse({"error": "Research is cleared"}, status_code=409)
    except StorageError as e:
        logger.error(f"Failed to update research state for {chat_id}: {e}")
        return JSONResponse({"error": "Failed to update research state"}, status_code=500)
    return SuccessResponse(success=True)
