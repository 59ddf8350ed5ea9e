"""Tests for models/streaming: SSE framing, delta accumulation, fallbacks, event iteration."""

import json

import pytest

from chatbridge.core.delivery import DeliveryScheduler
from chatbridge.core.events import StreamCompleted, TextDelta
from chatbridge.models.streaming import (
    DeltaDecoder,
    decode_payload,
    decode_sse_text,
    extract_event_text,
    extract_output_text,
    iter_stream_events,
)


def _frame(payload) -> bytes:
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


def _delta(text: str) -> dict:
    return {"type": "response.output_text.delta", "delta": text}


def test_feed_returns_deltas_in_order():
    decoder = DeltaDecoder()
    out = decoder.feed(_frame(_delta("Hel")) + _frame(_delta("lo")))
    assert out == [("Hel", "Hel"), ("lo", "Hello")]
    assert decoder.text == "Hello"


def test_frame_split_across_reads():
    decoder = DeltaDecoder()
    raw = _frame(_delta("abc"))
    assert decoder.feed(raw[:7]) == []
    assert decoder.feed(raw[7:]) == [("abc", "abc")]


def test_multibyte_character_split_across_reads():
    decoder = DeltaDecoder()
    raw = ('data: {"type": "response.output_text.delta", "delta": "héllo 👋"}\n\n').encode("utf-8")
    idx = raw.index("👋".encode("utf-8")) + 2
    assert decoder.feed(raw[:idx]) == []
    assert decoder.feed(raw[idx:]) == [("héllo 👋", "héllo 👋")]


def test_crlf_frames():
    decoder = DeltaDecoder()
    raw = b'data: {"type":"response.output_text.delta","delta":"x"}\r\n\r\n'
    assert decoder.feed(raw) == [("x", "x")]


def test_done_sentinel_and_malformed_json_are_skipped():
    decoder = DeltaDecoder()
    out = decoder.feed(b"data: [DONE]\n\ndata: {not json\n\n" + _frame(_delta("ok")))
    assert out == [("ok", "ok")]
    assert decoder.result == "ok"


def test_non_data_lines_are_metadata():
    decoder = DeltaDecoder()
    raw = b'event: response.output_text.delta\nid: 1\ndata: {"type":"response.output_text.delta","delta":"a"}\n\n'
    assert decoder.feed(raw) == [("a", "a")]


def test_multiple_data_lines_joined():
    decoder = DeltaDecoder()
    raw = b'data: {"type":"response.output_text.delta",\ndata: "delta":"joined"}\n\n'
    assert decoder.feed(raw) == [("joined", "joined")]


def test_fallback_used_when_no_delta():
    decoder = DeltaDecoder()
    completed = {"type": "response.completed", "response": {"output_text": "  final answer  "}}
    assert decoder.feed(_frame(completed)) == []
    assert decoder.result == "final answer"


def test_deltas_win_over_fallback():
    decoder = DeltaDecoder()
    decoder.feed(_frame(_delta(" streamed ")))
    decoder.feed(_frame({"type": "response.completed", "response": {"output_text": "other"}}))
    assert decoder.result == "streamed"


def test_blank_deltas_fall_back():
    decoder = DeltaDecoder()
    decoder.feed(_frame(_delta("   ")))
    decoder.feed(_frame({"type": "response.completed", "response": {"output_text": "fb"}}))
    assert decoder.result == "fb"


def test_close_handles_unterminated_trailing_frame():
    decoder = DeltaDecoder()
    assert decoder.feed(b'data: {"type":"response.output_text.delta","delta":"tail"}') == []
    assert decoder.close() == [("tail", "tail")]
    assert decoder.close() == []
    with pytest.raises(RuntimeError):
        decoder.feed(b"data: x\n\n")


def test_extract_output_text_from_message_items():
    response = {
        "output": [
            {"type": "reasoning"},
            {"type": "message", "content": [{"type": "output_text", "text": " from item "}]},
        ]
    }
    assert extract_output_text(response) == "from item"
    assert extract_output_text(None) == ""
    assert extract_event_text({"output_text": "direct"}) == "direct"


def test_decode_sse_text_and_payload():
    raw = _frame(_delta("a")).decode() + _frame(_delta("b")).decode() + "data: [DONE]\n\n"
    assert decode_sse_text(raw) == "ab"
    assert decode_payload(raw) == "ab"
    assert decode_payload(json.dumps({"output_text": "json body"})) == "json body"
    assert decode_payload("not json") == ""
    assert decode_payload("") == ""


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


@pytest.mark.asyncio
async def test_iter_stream_events_yields_deltas_then_completed():
    raw = _frame(_delta("Hel")) + _frame(_delta("lo ")) + _frame(_delta("world"))
    events = [e async for e in iter_stream_events(_chunks(raw[:10], raw[10:40], raw[40:]))]
    deltas = [e for e in events if isinstance(e, TextDelta)]
    assert [d.delta for d in deltas] == ["Hel", "lo ", "world"]
    assert [d.text for d in deltas] == ["Hel", "Hello ", "Hello world"]
    assert isinstance(events[-1], StreamCompleted)
    assert events[-1].text == "Hello world"
    assert sum(isinstance(e, StreamCompleted) for e in events) == 1


@pytest.mark.asyncio
async def test_iter_stream_events_empty_stream():
    events = [e async for e in iter_stream_events(_chunks())]
    assert len(events) == 1
    assert events[0].text == ""


@pytest.mark.asyncio
async def test_frames_in_one_read_carry_their_own_text():
    raw = _frame(_delta("Hel")) + _frame(_delta("lo ")) + _frame(_delta("world"))
    events = [e async for e in iter_stream_events(_chunks(raw))]
    assert [e.text for e in events if isinstance(e, TextDelta)] == ["Hel", "Hello ", "Hello world"]


@pytest.mark.asyncio
async def test_single_read_stream_drives_delivery_in_order():
    writes: list[tuple[str, str]] = []

    class Transport:
        async def create(self, text: str) -> str:
            writes.append(("create", text))
            return "h"

        async def update(self, handle: str, text: str) -> None:
            writes.append(("update", text))

    scheduler = DeliveryScheduler(Transport(), 10.0, clock=lambda: 0.0)
    raw = _frame(_delta("Hel")) + _frame(_delta("lo ")) + _frame(_delta("world"))
    final = ""
    async for event in iter_stream_events(_chunks(raw)):
        if isinstance(event, TextDelta):
            await scheduler.on_delta(event.text)
        else:
            final = event.text
    await scheduler.complete(final)
    assert writes == [("create", "Hel"), ("update", "Hello world")]
