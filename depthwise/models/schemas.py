from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Requests ---


class ChatMessage(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    role: str
    content: str | list[Any] = ""


class ChatRequest(CamelModel):
    id: str = Field(min_length=1)
    messages: list[ChatMessage] = Field(min_length=1)


class ResearchUpdateRequest(CamelModel):
    is_cleared: bool | None = None
    max_depth: int | None = None


class UsagePayload(CamelModel):
    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    total_tokens: int | None = Field(default=None, ge=0)


class UsageRequest(CamelModel):
    # Optional so missing fields come back as 400 rather than 422.
    model: str | None = None
    chat_id: str | None = None
    usage: UsagePayload | None = None
    finish_reason: str | None = None


# --- Responses ---


class ModelInfo(BaseModel):
    id: str
    name: str
    provider: str
    enabled: bool
    tool_calls: bool
    reasoning: bool
    context_window: int


class ModelsResponse(BaseModel):
    models: list[ModelInfo]


class SuccessResponse(BaseModel):
    success: bool
