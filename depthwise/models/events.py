from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum, StrEnum
from typing import Any, ClassVar


class FrameKind(str, Enum):
    TEXT = "0"
    DATA = "2"
    ERROR = "3"
    TOOL_CALL = "9"
    TOOL_RESULT = "a"
    TOOL_CALL_START = "b"
    TOOL_CALL_DELTA = "c"
    FINISH = "d"


class AnnotationType(StrEnum):
    CHART = "chart"
    RELATED_QUESTIONS = "related-questions"
    RESEARCH_ACTIVITY = "research-activity"
    RESEARCH_SOURCE = "research-source"
    RESEARCH_STATE = "research-state"


class FinishReason(StrEnum):
    STOP = "stop"
    LENGTH = "length"
    CONTENT_FILTER = "content-filter"
    TOOL_CALLS = "tool-calls"
    ERROR = "error"
    OTHER = "other"
    UNKNOWN = "unknown"

    @classmethod
    def normalize(cls, value: str | None) -> FinishReason:
        """Map provider finish reasons (openai style included) onto the protocol set."""
        if not value:
            return cls.UNKNOWN
        lowered = value.lower().replace("_", "-")
        if lowered == "tool-call":
            lowered = "tool-calls"
        try:
            return cls(lowered)
        except ValueError:
            return cls.OTHER


@dataclass
class StreamEvent:
    kind: ClassVar[FrameKind]

    def payload(self) -> Any:
        raise NotImplementedError

    def format(self) -> str:
        body = json.dumps(self.payload(), ensure_ascii=False, separators=(",", ":"))
        return f"{self.kind.value}:{body}\n"


@dataclass
class TextDelta(StreamEvent):
    kind: ClassVar[FrameKind] = FrameKind.TEXT
    text: str = ""

    def payload(self) -> Any:
        return self.text

    @classmethod
    def from_payload(cls, payload: Any) -> TextDelta:
        if not isinstance(payload, str):
            raise ValueError("text frame payload must be a string")
        return cls(text=payload)


@dataclass
class DataAnnotation(StreamEvent):
    kind: ClassVar[FrameKind] = FrameKind.DATA
    data: Any = None

    def payload(self) -> Any:
        return self.data

    @classmethod
    def from_payload(cls, payload: Any) -> DataAnnotation:
        return cls(data=payload)


@dataclass
class ErrorEvent(StreamEvent):
    kind: ClassVar[FrameKind] = FrameKind.ERROR
    message: str = ""

    def payload(self) -> Any:
        return self.message

    @classmethod
    def from_payload(cls, payload: Any) -> ErrorEvent:
        if not isinstance(payload, str):
            raise ValueError("error frame payload must be a string")
        return cls(message=payload)


@dataclass
class ToolCall(StreamEvent):
    kind: ClassVar[FrameKind] = FrameKind.TOOL_CALL
    tool_call_id: str = ""
    tool_name: str = ""
    args: dict[str, Any] = field(default_factory=dict)

    def payload(self) -> Any:
        return {"toolCallId": self.tool_call_id, "toolName": self.tool_name, "args": self.args}

    @classmethod
    def from_payload(cls, payload: Any) -> ToolCall:
        _require_keys(payload, "toolCallId", "toolName")
        args = payload.get("args") or {}
        if not isinstance(args, dict):
            raise ValueError("tool call args must be an object")
        return cls(tool_call_id=payload["toolCallId"], tool_name=payload["toolName"], args=args)


@dataclass
class ToolResult(StreamEvent):
    kind: ClassVar[FrameKind] = FrameKind.TOOL_RESULT
    tool_call_id: str = ""
    result: Any = None

    def payload(self) -> Any:
        return {"toolCallId": self.tool_call_id, "result": self.result}

    @classmethod
    def from_payload(cls, payload: Any) -> ToolResult:
        _require_keys(payload, "toolCallId")
        return cls(tool_call_id=payload["toolCallId"], result=payload.get("result"))


@dataclass
class ToolCallStart(StreamEvent):
    kind: ClassVar[FrameKind] = FrameKind.TOOL_CALL_START
    tool_call_id: str = ""
    tool_name: str = ""

    def payload(self) -> Any:
        return {"toolCallId": self.tool_call_id, "toolName": self.tool_name}

    @classmethod
    def from_payload(cls, payload: Any) -> ToolCallStart:
        _require_keys(payload, "toolCallId", "toolName")
        return cls(tool_call_id=payload["toolCallId"], tool_name=payload["toolName"])


@dataclass
class ToolCallDelta(StreamEvent):
    kind: ClassVar[FrameKind] = FrameKind.TOOL_CALL_DELTA
    tool_call_id: str = ""
    args_text_delta: str = ""

    def payload(self) -> Any:
        return {"toolCallId": self.tool_call_id, "argsTextDelta": self.args_text_delta}

    @classmethod
    def from_payload(cls, payload: Any) -> ToolCallDelta:
        _require_keys(payload, "toolCallId", "argsTextDelta")
        return cls(tool_call_id=payload["toolCallId"], args_text_delta=payload["argsTextDelta"])


@dataclass
class Finish(StreamEvent):
    kind: ClassVar[FrameKind] = FrameKind.FINISH
    finish_reason: FinishReason = FinishReason.UNKNOWN
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def payload(self) -> Any:
        return {
            "finishReason": self.finish_reason.value,
            "usage": {
                "promptTokens": self.prompt_tokens,
                "completionTokens": self.completion_tokens,
            },
        }

    @classmethod
    def from_payload(cls, payload: Any) -> Finish:
        _require_keys(payload, "finishReason")
        usage = payload.get("usage") or {}
        if not isinstance(usage, dict):
            raise ValueError("finish usage must be an object")
        return cls(
            finish_reason=FinishReason(payload["finishReason"]),
            prompt_tokens=int(usage.get("promptTokens", 0)),
            completion_tokens=int(usage.get("completionTokens", 0)),
        )


@dataclass
class Passthrough:
    """A line the decoder could not interpret; kept verbatim."""

    line: str


EVENT_TYPES: dict[str, type[StreamEvent]] = {
    cls.kind.value: cls
    for cls in (
        TextDelta,
        DataAnnotation,
        ErrorEvent,
        ToolCall,
        ToolResult,
        ToolCallStart,
        ToolCallDelta,
        Finish,
    )
}


def _require_keys(payload: Any, *keys: str) -> None:
    if not isinstance(payload, dict):
        raise ValueError("frame payload must be an object")
    missing = [k for k in keys if k not in payload]
    if missing:
        raise ValueError(f"frame payload missing {', '.join(missing)}")
