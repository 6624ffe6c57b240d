from __future__ import annotations

from fastapi import APIRouter, HTTPException

from depthwise.config import settings
from depthwise.models.schemas import SuccessResponse
from depthwise.services import database as db

router = APIRouter(prefix="/api/chats", tags=["chats"])


@router.get("")
async def list_chats():
    """Chats for the current user, most recent first."""
    return {"chats": await db.get_chats(settings.default_user_id)}


@router.get("/{chat_id}")
async def get_chat(chat_id: str):
    chat = await db.get_chat(chat_id)
    if chat is None:
        raise HTTPException(status_code=404, detail="Chat not found")
    return chat


@router.delete("/{chat_id}", response_model=SuccessResponse)
async def delete_chat(chat_id: str):
    deleted = await db.delete_chat(chat_id, settings.default_user_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Chat not found")
    return SuccessResponse(success=True)
