from __future__ import annotations

import json

import pytest

from depthwise.exceptions import ProtocolError
from depthwise.models.events import (
    DataAnnotation,
    ErrorEvent,
    Finish,
    FinishReason,
    Passthrough,
    TextDelta,
    ToolCall,
    ToolCallDelta,
    ToolCallStart,
    ToolResult,
)
from depthwise.services.protocol import FrameDecoder, ProtocolWriter, decode, decode_line, encode, estimate_tokens


class TestWriter:
    def test_text_frame(self):
        writer = ProtocolWriter()
        assert writer.text("hello") == '0:"hello"\n'

    def test_finish_frame_is_compact_json(self):
        writer = ProtocolWriter()
        writer.text("hello")
        assert writer.finish("stop") == 'd:{"finishReason":"stop","usage":{"promptTokens":0,"completionTokens":2}}\n'

    def test_tool_frames(self):
        writer = ProtocolWriter()
        assert writer.tool_call_start("c1", "search") == 'b:{"toolCallId":"c1","toolName":"search"}\n'
        assert writer.tool_call_delta("c1", '{"q') == 'c:{"toolCallId":"c1","argsTextDelta":"{\\"q"}\n'
        assert writer.tool_call("c1", "search", {"query": "x"}).startswith("9:")
        assert writer.tool_result("c1", {"ok": True}) == 'a:{"toolCallId":"c1","result":{"ok":true}}\n'

    def test_non_ascii_text_is_kept(self):
        writer = ProtocolWriter()
        assert writer.text("café") == '0:"café"\n'

    def test_completion_estimate_from_text(self):
        writer = ProtocolWriter()
        writer.text("a" * 9)
        writer.text("b")
        assert writer.usage.completion_tokens == estimate_tokens("a" * 9) + estimate_tokens("b") == 4

    def test_reported_usage_supersedes_estimate(self):
        writer = ProtocolWriter()
        writer.add_prompt_estimate(100)
        writer.text("x" * 400)
        writer.update_usage(12, 5)
        usage = writer.usage
        assert usage.completion_tokens == 5
        assert usage.prompt_tokens == 12
        assert usage.total_tokens == 17

    def test_reported_prompt_tokens_accumulate(self):
        writer = ProtocolWriter()
        writer.update_usage(10, 3)
        writer.add_prompt_estimate(50)
        writer.update_usage(7, 2)
        assert writer.usage.to_dict() == {"promptTokens": 17, "completionTokens": 5, "totalTokens": 22}

    def test_nothing_after_finish(self):
        writer = ProtocolWriter()
        writer.finish()
        assert writer.finished
        with pytest.raises(ProtocolError):
            writer.text("late")
        with pytest.raises(ProtocolError):
            writer.finish()

    def test_error_forces_error_finish(self):
        writer = ProtocolWriter()
        frame = writer.error(RuntimeError("boom"))
        assert frame == '3:"boom"\n'
        finish = decode_line(writer.finish("stop").rstrip("\n"))
        assert finish.finish_reason == FinishReason.ERROR

    def test_provider_finish_reasons_are_normalized(self):
        assert FinishReason.normalize("tool_calls") == FinishReason.TOOL_CALLS
        assert FinishReason.normalize("content_filter") == FinishReason.CONTENT_FILTER
        assert FinishReason.normalize("weird") == FinishReason.OTHER
        assert FinishReason.normalize(None) == FinishReason.UNKNOWN


class TestDecoder:
    def test_round_trip_of_a_turn(self):
        events = [
            TextDelta(text="Hello"),
            ToolCallStart(tool_call_id="c1", tool_name="search"),
            ToolCallDelta(tool_call_id="c1", args_text_delta='{"query":"ai"}'),
            ToolCall(tool_call_id="c1", tool_name="search", args={"query": "ai"}),
            ToolResult(tool_call_id="c1", result={"results": []}),
            DataAnnotation(data={"type": "chart", "data": {"labels": [1]}}),
            ErrorEvent(message="oops"),
            Finish(finish_reason=FinishReason.ERROR, prompt_tokens=3, completion_tokens=4),
        ]
        decoded = decode(encode(events))
        assert decoded == events
        assert isinstance(decoded[-1], Finish)

    def test_unknown_tag_passes_through(self):
        assert decode_line('z:{"a":1}') == Passthrough(line='z:{"a":1}')

    def test_bad_json_passes_through(self):
        assert decode_line("0:{bad") == Passthrough(line="0:{bad")

    def test_wrong_payload_shape_passes_through(self):
        assert isinstance(decode_line('9:{"toolName":"search"}'), Passthrough)
        assert isinstance(decode_line("0:42"), Passthrough)

    @pytest.mark.parametrize("usage", ["[1]", "5", '"x"'])
    def test_finish_with_non_object_usage_passes_through(self, usage):
        line = 'd:{"finishReason":"stop","usage":' + usage + "}"
        assert decode_line(line) == Passthrough(line=line)

    def test_non_object_usage_does_not_break_decode(self):
        events = decode('0:"hi"\nd:{"finishReason":"stop","usage":[1]}\n')
        assert events == [
            TextDelta(text="hi"),
            Passthrough(line='d:{"finishReason":"stop","usage":[1]}'),
        ]

    def test_tool_call_with_non_object_args_passes_through(self):
        line = '9:{"toolCallId":"c1","toolName":"search","args":"x"}'
        assert decode_line(line) == Passthrough(line=line)

    def test_line_without_tag(self):
        assert decode_line("no tag here") == Passthrough(line="no tag here")

    def test_partial_frames_across_chunks(self):
        decoder = FrameDecoder()
        assert decoder.feed('0:"Hel') == []
        assert decoder.feed('lo"\n2:[1,') == [TextDelta(text="Hello")]
        assert decoder.feed("2]\n") == [DataAnnotation(data=[1, 2])]
        assert decoder.flush() == []

    def test_multibyte_character_split_across_byte_chunks(self):
        frame = '0:"naïve"\n'.encode("utf-8")
        split = frame.index("ï".encode("utf-8")) + 1
        decoder = FrameDecoder()
        events = decoder.feed(frame[:split]) + decoder.feed(frame[split:])
        assert events == [TextDelta(text="naïve")]

    def test_flush_decodes_trailing_line(self):
        decoder = FrameDecoder()
        decoder.feed('d:{"finishReason":"stop"}')
        assert decoder.flush() == [Finish(finish_reason=FinishReason.STOP)]

    def test_data_frame_accepts_any_json(self):
        payload = [{"type": "related-questions", "data": {"items": []}}]
        line = "2:" + json.dumps(payload)
        assert decode_line(line) == DataAnnotation(data=payload)
