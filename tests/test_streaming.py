"""Tests for SSE framing and the streaming event state machine."""

from __future__ import annotations

import json

import pytest

from tether.core.errors import AIError, ErrorKind
from tether.core.models import FinishReason
from tether.streaming.accumulator import (
    MAX_BLOCK_INDEX,
    MAX_TOOL_ARGUMENTS_CHARS,
    StreamAccumulator,
    map_stop_reason,
)
from tether.streaming.sse import SSEParser, aiter_sse


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _text(index: int, text: str) -> dict:
    return {"type": "content_block_delta", "index": index, "delta": {"type": "text_delta", "text": text}}


def _tool_start(index: int, call_id: str, name: str) -> dict:
    return {
        "type": "content_block_start",
        "index": index,
        "content_block": {"type": "tool_use", "id": call_id, "name": name, "input": {}},
    }


def _json(index: int, fragment: str) -> dict:
    return {"type": "content_block_delta", "index": index, "delta": {"type": "input_json_delta", "partial_json": fragment}}


def _stop(reason: str, output_tokens: int = 7) -> list[dict]:
    return [
        {"type": "message_delta", "delta": {"stop_reason": reason}, "usage": {"output_tokens": output_tokens}},
        {"type": "message_stop"},
    ]


def _feed_all(acc: StreamAccumulator, events) -> list:
    chunks = []
    for event in events:
        chunks.extend(acc.feed(event))
    return chunks


# ---------------------------------------------------------------------------
# SSE
# ---------------------------------------------------------------------------

def test_sse_parser_dispatches_on_blank_line():
    parser = SSEParser()
    assert parser.feed_line("event: message_start") == []
    assert parser.feed_line('data: {"a": 1}') == []
    [event] = parser.feed_line("")

    assert event.event == "message_start"
    assert event.json() == {"a": 1}


def test_sse_parser_joins_multiline_data_and_ignores_comments():
    parser = SSEParser()
    parser.feed_line(": keep-alive")
    parser.feed_line("data: line one")
    parser.feed_line("data: line two")
    parser.feed_line("id: 7")
    parser.feed_line("retry: 1500")
    [event] = parser.feed_line("")

    assert event.event == "message"
    assert event.data == "line one\nline two"
    assert event.id == "7"
    assert event.retry == 1500


def test_sse_parser_flushes_pending_event():
    parser = SSEParser()
    parser.feed_line("data: tail")
    [event] = parser.flush()
    assert event.data == "tail"
    assert parser.flush() == []


@pytest.mark.asyncio
async def test_aiter_sse_adapts_line_iterators():
    async def lines():
        for line in ["data: 1", "", "data: 2"]:
            yield line

    events = [event.data async for event in aiter_sse(lines())]
    assert events == ["1", "2"]


# ---------------------------------------------------------------------------
# Stop reasons
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "reason, expected",
    [
        ("end_turn", FinishReason.STOP),
        ("max_tokens", FinishReason.MAX_TOKENS),
        ("stop_sequence", FinishReason.STOP_SEQUENCE),
        ("tool_use", FinishReason.TOOL_CALLS),
        ("pause_turn", FinishReason.PAUSE_TURN),
        ("refusal", FinishReason.CONTENT_FILTER),
        ("model_context_window_exceeded", FinishReason.MODEL_CONTEXT_WINDOW_EXCEEDED),
        ("something_new", FinishReason.STOP),
        (None, FinishReason.STOP),
    ],
)
def test_map_stop_reason(reason, expected):
    assert map_stop_reason(reason) == expected


# ---------------------------------------------------------------------------
# Accumulator
# ---------------------------------------------------------------------------

def test_text_stream_yields_deltas_and_terminal_chunk():
    clock = FakeClock()
    acc = StreamAccumulator(clock=clock)
    events = [
        {"type": "message_start", "message": {"id": "msg_1", "model": "claude", "usage": {"input_tokens": 12}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "ping"},
        _text(0, "Hello"),
        _text(0, ", world"),
        {"type": "content_block_stop", "index": 0},
    ]
    chunks = _feed_all(acc, events)
    clock.now += 2.0
    chunks += _feed_all(acc, _stop("end_turn", output_tokens=4))

    assert [c.text for c in chunks[:-1]] == ["Hello", ", world"]
    terminal = chunks[-1]
    assert terminal.is_complete
    assert terminal.finish_reason == FinishReason.STOP
    assert terminal.usage.prompt_tokens == 12
    assert terminal.usage.completion_tokens == 4
    assert terminal.tool_calls == ()
    assert terminal.tokens_per_second == pytest.approx(2.0)

    result = acc.result()
    assert result.text == "Hello, world"
    assert acc.model == "claude"
    assert acc.message_id == "msg_1"
    assert acc.is_finished
    assert acc.feed(_text(0, "late")) == []


def test_tool_arguments_are_buffered_until_block_stop():
    acc = StreamAccumulator()
    events = [
        _tool_start(1, "toolu_1", "get_weather"),
        _json(1, '{"ci'),
        _json(1, 'ty": "Pa'),
        _json(1, 'ris"}'),
    ]
    assert _feed_all(acc, events) == []
    assert acc.tool_calls == ()

    acc.feed({"type": "content_block_stop", "index": 1})
    [call] = acc.tool_calls
    assert call.id == "toolu_1"
    assert call.tool_name == "get_weather"
    assert json.loads(call.arguments_json) == {"city": "Paris"}

    terminal = _feed_all(acc, _stop("tool_use"))[-1]
    assert terminal.finish_reason == FinishReason.TOOL_CALLS
    assert terminal.tool_calls == (call,)
    assert acc.result().tool_calls == (call,)


def test_interleaved_tool_blocks_keep_separate_buffers():
    acc = StreamAccumulator()
    _feed_all(acc, [
        _tool_start(1, "a", "first"),
        _tool_start(2, "b", "second"),
        _json(2, '{"n": '),
        _json(1, '{"m": '),
        _json(1, "1}"),
        _json(2, "2}"),
        {"type": "content_block_stop", "index": 2},
        {"type": "content_block_stop", "index": 1},
        *_stop("tool_use"),
    ])

    calls = acc.result().tool_calls
    assert [c.id for c in calls] == ["a", "b"]
    assert [c.arguments for c in calls] == [{"m": 1}, {"n": 2}]


def test_truncated_tool_arguments_are_repaired_at_message_stop():
    acc = StreamAccumulator()
    _feed_all(acc, [_tool_start(1, "t", "search"), _json(1, '{"query": "pari'), *_stop("tool_use")])

    [call] = acc.result().tool_calls
    assert call.arguments == {"query": "pari"}


def test_empty_tool_arguments_default_to_empty_object():
    acc = StreamAccumulator()
    _feed_all(acc, [_tool_start(1, "t", "now"), {"type": "content_block_stop", "index": 1}, *_stop("tool_use")])
    assert acc.result().tool_calls[0].arguments == {}


def test_unrepairable_tool_arguments_raise_generation_error():
    acc = StreamAccumulator()
    _feed_all(acc, [_tool_start(1, "t", "broken"), _json(1, '{"a" 1}')])

    with pytest.raises(AIError) as info:
        acc.feed({"type": "content_block_stop", "index": 1})
    assert info.value.kind == ErrorKind.GENERATION_FAILED


def test_tool_arguments_are_capped():
    acc = StreamAccumulator()
    acc.feed(_tool_start(1, "t", "big"))
    acc.feed(_json(1, '{"blob": "' + "x" * (MAX_TOOL_ARGUMENTS_CHARS + 500)))
    acc.feed(_json(1, "more"))
    block = acc._blocks[1]
    assert len(block.json_buffer) == MAX_TOOL_ARGUMENTS_CHARS
    assert block.truncated


def test_out_of_range_block_index_is_ignored():
    acc = StreamAccumulator()
    acc.feed(_tool_start(MAX_BLOCK_INDEX + 1, "t", "far"))
    acc.feed(_tool_start(-1, "t", "negative"))
    assert acc._blocks == {}


def test_text_delta_outside_block_range_is_ignored():
    acc = StreamAccumulator()

    assert acc.feed(_text(MAX_BLOCK_INDEX + 1, "far")) == []
    assert acc.feed(_text(-1, "negative")) == []
    assert acc.feed(_text("0", "not an int")) == []
    assert acc._blocks == {}

    # An in-range index without a block start still opens a text block
    chunks = acc.feed(_text(0, "near"))
    assert [c.text for c in chunks] == ["near"]


def test_tool_calls_are_dropped_when_finish_reason_is_not_tool_calls():
    acc = StreamAccumulator()
    _feed_all(acc, [
        _text(0, "Done."),
        _tool_start(1, "t", "stray"),
        _json(1, "{}"),
        {"type": "content_block_stop", "index": 1},
        *_stop("end_turn"),
    ])
    result = acc.result()
    assert result.finish_reason == FinishReason.STOP
    assert result.tool_calls == ()


def test_tool_use_without_calls_is_a_generation_error():
    acc = StreamAccumulator()
    _feed_all(acc, _stop("tool_use"))
    with pytest.raises(AIError) as info:
        acc.result()
    assert info.value.kind == ErrorKind.GENERATION_FAILED


def test_error_event_raises_server_error():
    acc = StreamAccumulator()
    with pytest.raises(AIError) as info:
        acc.feed({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
    assert info.value.kind == ErrorKind.SERVER_ERROR
    assert "[overloaded_error] Overloaded" in str(info.value)


def test_finish_produces_terminal_when_transport_ends_early():
    acc = StreamAccumulator()
    acc.feed(_text(0, "partial"))

    terminal = acc.finish()
    assert terminal.is_complete
    assert terminal.finish_reason == FinishReason.STOP
    assert acc.finish() is None


def test_feed_json_skips_garbage():
    acc = StreamAccumulator()
    assert acc.feed_json("not json") == []
    assert acc.feed_json("[1, 2]") == []
    [chunk] = acc.feed_json(json.dumps(_text(0, "ok")))
    assert chunk.text == "ok"
