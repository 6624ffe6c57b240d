"""Line-framed stream protocol.

Every event is one line: a short kind tag, a colon, a JSON payload and a
newline. The writer keeps the usage tally and guarantees a single trailing
finish frame; the decoder turns frames back into typed events and keeps any
line it cannot read as an opaque ``Passthrough``.
"""
from __future__ import annotations

import codecs
import json
import math
from dataclasses import dataclass
from typing import Any, Iterable

from depthwise.exceptions import ProtocolError
from depthwise.models.events import (
    EVENT_TYPES,
    DataAnnotation,
    ErrorEvent,
    Finish,
    FinishReason,
    Passthrough,
    StreamEvent,
    TextDelta,
    ToolCall,
    ToolCallDelta,
    ToolCallStart,
    ToolResult,
)
from depthwise.services.logger import logger


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 characters per token."""
    return math.ceil(len(text) / 4)


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }


class ProtocolWriter:
    """Encodes events into frames for one response stream.

    Each method returns the frame text to write. Prompt tokens are estimated
    from the request and completion tokens from text deltas until the model
    reports real usage, after which only the reported figures count.
    """

    def __init__(self) -> None:
        self.finish_reason = FinishReason.UNKNOWN
        self._estimated_prompt = 0
        self._estimated_completion = 0
        self._reported_prompt = 0
        self._reported_completion = 0
        self._usage_reported = False
        self._errored = False
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def errored(self) -> bool:
        return self._errored

    @property
    def usage(self) -> Usage:
        if self._usage_reported:
            return Usage(prompt_tokens=self._reported_prompt, completion_tokens=self._reported_completion)
        return Usage(prompt_tokens=self._estimated_prompt, completion_tokens=self._estimated_completion)

    def _emit(self, event: StreamEvent) -> str:
        if self._finished:
            raise ProtocolError(f"Cannot write {event.kind.name} frame after finish")
        return event.format()

    def text(self, text: str) -> str:
        frame = self._emit(TextDelta(text=text))
        self._estimated_completion += estimate_tokens(text)
        return frame

    def data(self, data: Any) -> str:
        return self._emit(DataAnnotation(data=data))

    def error(self, error: str | BaseException) -> str:
        message = str(error) if isinstance(error, BaseException) else error
        frame = self._emit(ErrorEvent(message=message))
        self._errored = True
        self.finish_reason = FinishReason.ERROR
        return frame

    def tool_call(self, tool_call_id: str, tool_name: str, args: dict[str, Any]) -> str:
        return self._emit(ToolCall(tool_call_id=tool_call_id, tool_name=tool_name, args=args))

    def tool_result(self, tool_call_id: str, result: Any) -> str:
        return self._emit(ToolResult(tool_call_id=tool_call_id, result=result))

    def tool_call_start(self, tool_call_id: str, tool_name: str) -> str:
        return self._emit(ToolCallStart(tool_call_id=tool_call_id, tool_name=tool_name))

    def tool_call_delta(self, tool_call_id: str, args_text_delta: str) -> str:
        return self._emit(ToolCallDelta(tool_call_id=tool_call_id, args_text_delta=args_text_delta))

    def update_usage(self, prompt_tokens: int, completion_tokens: int) -> None:
        """Record usage reported by the model for one completion call."""
        self._reported_prompt += max(int(prompt_tokens), 0)
        self._reported_completion += max(int(completion_tokens), 0)
        self._usage_reported = True

    def add_prompt_estimate(self, prompt_tokens: int) -> None:
        self._estimated_prompt += max(int(prompt_tokens), 0)

    def finish(self, finish_reason: FinishReason | str = FinishReason.STOP) -> str:
        reason = FinishReason.normalize(str(finish_reason))
        if self._errored:
            reason = FinishReason.ERROR
        usage = self.usage
        frame = self._emit(
            Finish(
                finish_reason=reason,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
            )
        )
        self.finish_reason = reason
        self._finished = True
        return frame


def encode(events: Iterable[StreamEvent]) -> str:
    return "".join(event.format() for event in events)


def decode_line(line: str) -> StreamEvent | Passthrough:
    """Decode one frame; anything unrecognized becomes a Passthrough."""
    tag, sep, raw = line.partition(":")
    event_type = EVENT_TYPES.get(tag) if sep else None
    if event_type is None:
        return Passthrough(line=line)
    try:
        payload = json.loads(raw)
        return event_type.from_payload(payload)
    except (ValueError, TypeError, KeyError) as e:
        logger.warning(f"Unreadable {tag!r} frame passed through: {e}")
        return Passthrough(line=line)


class FrameDecoder:
    """Incremental decoder holding back a trailing partial line between chunks."""

    def __init__(self) -> None:
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")()

    def feed(self, chunk: str | bytes) -> list[StreamEvent | Passthrough]:
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [decode_line(line) for line in lines if line.strip()]

    def flush(self) -> list[StreamEvent | Passthrough]:
        remaining, self._buffer = self._buffer + self._utf8.decode(b"", final=True), ""
        if not remaining.strip():
            return []
        return [decode_line(remaining)]


def decode(text: str) -> list[StreamEvent | Passthrough]:
    decoder = FrameDecoder()
    return decoder.feed(text) + decoder.flush()
