from __future__ import annotations

from fastapi import APIRouter

from depthwise.models.schemas import ModelInfo, ModelsResponse
from depthwise.services.registry import get_available_models

router = APIRouter(prefix="/api/models", tags=["models"])


@router.get("", response_model=ModelsResponse)
async def list_models():
    """Catalogue models with their provider enablement and capabilities."""
    return ModelsResponse(
        models=[
            ModelInfo(
                id=m["id"],
                name=m["name"],
                provider=m["provider"],
                enabled=m["enabled"],
                tool_calls=m["tool_calls"],
                reasoning=m["reasoning"],
                context_window=m["context_window"],
            )
            for m in get_available_models()
        ]
    )
