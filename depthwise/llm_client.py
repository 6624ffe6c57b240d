"""OpenRouter chat client (OpenAI-compatible SDK) with a streaming chunk adapter."""
from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator

from depthwise.config import settings
from depthwise.services import logger as log_service
from depthwise.services.registry import to_openrouter_id


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class TextChunk:
    text: str


@dataclass
class ToolCallChunk:
    """A fragment of a tool call; fragments with the same index belong together."""

    index: int
    id: str | None
    name: str | None
    arguments: str


@dataclass
class UsageChunk:
    usage: Usage


@dataclass
class FinishChunk:
    reason: str


ModelChunk = TextChunk | ToolCallChunk | UsageChunk | FinishChunk


@dataclass
class MessageResponse:
    text: str
    usage: Usage


def parse_chunk(chunk: Any) -> list[ModelChunk]:
    """Map one streamed completion chunk onto ModelChunks."""
    out: list[ModelChunk] = []
    usage = getattr(chunk, "usage", None)
    if usage:
        out.append(
            UsageChunk(
                Usage(
                    input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                    output_tokens=getattr(usage, "completion_tokens", 0) or 0,
                )
            )
        )

    choices = getattr(chunk, "choices", None) or []
    if not choices:
        return out
    choice = choices[0]
    delta = getattr(choice, "delta", None)
    if delta:
        text = getattr(delta, "content", None)
        if text:
            out.append(TextChunk(text))
        for tc in getattr(delta, "tool_calls", None) or []:
            function = getattr(tc, "function", None)
            out.append(
                ToolCallChunk(
                    index=getattr(tc, "index", 0) or 0,
                    id=getattr(tc, "id", None),
                    name=getattr(function, "name", None) if function else None,
                    arguments=(getattr(function, "arguments", None) or "") if function else "",
                )
            )
    reason = getattr(choice, "finish_reason", None)
    if reason:
        out.append(FinishChunk(reason))
    return out


class OpenRouterStream:
    def __init__(self, stream_coro: Any, *, model: str, caller: str):
        self._stream_coro = stream_coro
        self._stream: Any | None = None
        self.model = model
        self.caller = caller
        self.usage = Usage()
        self._started = 0.0

    async def __aenter__(self) -> "OpenRouterStream":
        self._started = time.monotonic()
        self._stream = await self._stream_coro
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
        log_service.log_llm_call(
            model=self.model,
            caller=self.caller,
            input_tokens=self.usage.input_tokens,
            output_tokens=self.usage.output_tokens,
            duration_ms=int((time.monotonic() - self._started) * 1000),
            status="success" if exc is None else "failed",
            error=str(exc) if exc is not None else None,
        )

    async def close(self) -> None:
        if self._stream is not None:
            await self._stream.close()
            self._stream = None

    async def chunks(self) -> AsyncIterator[ModelChunk]:
        if self._stream is None:
            return
        async for raw in self._stream:
            for chunk in parse_chunk(raw):
                if isinstance(chunk, UsageChunk):
                    self.usage = chunk.usage
                yield chunk


class OpenRouterChatAdapter:
    def __init__(self, openai_client: Any):
        self._client = openai_client

    @staticmethod
    def _temperature_for_model(model: str) -> int | None:
        # Reasoning-style OpenAI models reject a temperature parameter.
        lowered = (model or "").lower()
        if "gpt-5" in lowered or "/o1" in lowered or "/o3" in lowered:
            return None
        return 0

    @staticmethod
    def _to_openai_messages(system: str, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        openai_messages: list[dict[str, Any]] = []
        if system:
            openai_messages.append({"role": "system", "content": system})
        for message in messages:
            role = message.get("role", "user")
            if role in ("tool", "system") or message.get("tool_calls"):
                openai_messages.append(message)
                continue
            content = message.get("content", "")
            if not isinstance(content, str):
                content = json.dumps(content, ensure_ascii=False)
            openai_messages.append({"role": role, "content": content})
        return openai_messages

    @staticmethod
    def _to_openai_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": t["name"],
                    "description": t.get("description", ""),
                    "parameters": t.get("input_schema", {"type": "object", "properties": {}}),
                },
            }
            for t in tools
        ]

    def _base_kwargs(
        self, model: str, system: str, messages: list[dict[str, Any]], max_tokens: int
    ) -> dict[str, Any]:
        openrouter_model = to_openrouter_id(model)
        kwargs: dict[str, Any] = {
            "model": openrouter_model,
            "messages": self._to_openai_messages(system, messages),
            "max_tokens": max_tokens,
        }
        temperature = self._temperature_for_model(openrouter_model)
        if temperature is not None:
            kwargs["temperature"] = temperature
        return kwargs

    def stream(
        self,
        *,
        model: str,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
        caller: str = "researcher",
    ) -> OpenRouterStream:
        kwargs = self._base_kwargs(model, system, messages, max_tokens or settings.max_output_tokens)
        if tools:
            kwargs["tools"] = self._to_openai_tools(tools)
            kwargs["tool_choice"] = "auto"
        stream = self._client.chat.completions.create(
            **kwargs,
            stream=True,
            stream_options={"include_usage": True},
        )
        return OpenRouterStream(stream, model=model, caller=caller)

    async def complete(
        self,
        *,
        model: str,
        system: str,
        messages: list[dict[str, Any]],
        max_tokens: int = 1024,
        json_mode: bool = False,
        caller: str = "completion",
    ) -> MessageResponse:
        kwargs = self._base_kwargs(model, system, messages, max_tokens)
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        t0 = time.monotonic()
        response = await self._client.chat.completions.create(**kwargs)
        elapsed_ms = int((time.monotonic() - t0) * 1000)

        usage = getattr(response, "usage", None)
        mapped = Usage(
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )
        log_service.log_llm_call(
            model=model,
            caller=caller,
            input_tokens=mapped.input_tokens,
            output_tokens=mapped.output_tokens,
            duration_ms=elapsed_ms,
        )
        text = getattr(response.choices[0].message, "content", None) or ""
        return MessageResponse(text=text, usage=mapped)


class OpenRouterClientAdapter:
    def __init__(self, openai_client: Any):
        self.chat = OpenRouterChatAdapter(openai_client)


def get_client() -> OpenRouterClientAdapter:
    """Get OpenRouter client via OpenAI-compatible SDK."""
    from openai import AsyncOpenAI

    base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
    openai_client = AsyncOpenAI(
        api_key=settings.openrouter_api_key,
        base_url=base_url,
    )
    return OpenRouterClientAdapter(openai_client)


_client: OpenRouterClientAdapter | None = None


def client() -> OpenRouterClientAdapter:
    """Get or create the LLM client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client
