"""Server-sent-event decoding for the responses endpoint.

The endpoint streams blank-line separated SSE frames. Each frame's ``data:`` lines are joined
and parsed as JSON:

- ``{"type": "response.output_text.delta", "delta": "..."}`` carries a text fragment;
- any other payload (``response.completed``, ``response.output_item.done``, ...) may carry the
  definitive answer, which becomes the fallback when no delta was ever streamed;
- ``data: [DONE]`` and empty frames are ignored.

``DeltaDecoder`` keeps its byte buffer across reads, so frames and multi-byte characters split
by the network are reassembled. ``iter_stream_events`` turns an async byte iterator into the
``TextDelta`` / ``StreamCompleted`` event sequence consumed by the delivery scheduler.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterator

from chatbridge.core.events import StreamCompleted, StreamEvent, TextDelta

logger = logging.getLogger(__name__)

DELTA_EVENT_TYPE = "response.output_text.delta"
DONE_SENTINEL = "[DONE]"


def extract_output_text(response: Any) -> str:
    """Definitive text of a complete response object: ``output_text``, else first message item."""
    if not isinstance(response, dict):
        return ""
    output_text = response.get("output_text")
    if isinstance(output_text, str) and output_text.strip():
        return output_text.strip()
    for item in response.get("output") or []:
        if not isinstance(item, dict) or item.get("type") != "message":
            continue
        for content in item.get("content") or []:
            if not isinstance(content, dict) or content.get("type") != "output_text":
                continue
            text = content.get("text")
            if isinstance(text, str) and text.strip():
                return text.strip()
    return ""


def extract_event_text(event: Any) -> str:
    if not isinstance(event, dict):
        return ""
    output_text = event.get("output_text")
    if isinstance(output_text, str) and output_text.strip():
        return output_text.strip()
    if event.get("response"):
        return extract_output_text(event["response"])
    return extract_output_text(event)


class DeltaAccumulator:
    """Transient per-request state: concatenated deltas and the latest fallback text."""

    def __init__(self) -> None:
        self.text = ""
        self.saw_delta = False
        self.fallback = ""

    def add_delta(self, delta: str) -> None:
        self.text += delta
        self.saw_delta = True

    def set_fallback(self, text: str) -> None:
        self.fallback = text

    @property
    def result(self) -> str:
        return self.text.strip() or self.fallback.strip()


class DeltaDecoder:
    """Incremental SSE decoder. feed() bytes as they arrive, close() at end of stream."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._closed = False
        self.accumulator = DeltaAccumulator()

    @property
    def text(self) -> str:
        """All delta text so far, untrimmed."""
        return self.accumulator.text

    @property
    def result(self) -> str:
        return self.accumulator.result

    def feed(self, chunk: bytes) -> list[tuple[str, str]]:
        """Decode `chunk`; returns one ``(delta, text_so_far)`` pair per delta frame it completed."""
        if self._closed:
            raise RuntimeError("decoder already closed")
        self._buffer += self._decoder.decode(chunk)
        self._buffer = self._buffer.replace("\r\n", "\n")
        updates: list[tuple[str, str]] = []
        while True:
            idx = self._buffer.find("\n\n")
            if idx == -1:
                break
            frame, self._buffer = self._buffer[:idx], self._buffer[idx + 2 :]
            update = self._handle_frame(frame)
            if update is not None:
                updates.append(update)
        return updates

    def close(self) -> list[tuple[str, str]]:
        if self._closed:
            return []
        self._closed = True
        self._buffer += self._decoder.decode(b"", final=True)
        rest, self._buffer = self._buffer.replace("\r\n", "\n"), ""
        updates: list[tuple[str, str]] = []
        # A body may end with one or more complete frames but no final blank line
        for frame in rest.split("\n\n"):
            if not frame.strip():
                continue
            update = self._handle_frame(frame)
            if update is not None:
                updates.append(update)
        return updates

    def _handle_frame(self, frame: str) -> tuple[str, str] | None:
        data_lines = []
        for line in frame.split("\n"):
            stripped = line.strip()
            if stripped.startswith("data:"):
                data_lines.append(stripped[5:].strip())
        if not data_lines:
            return None
        data = "\n".join(data_lines)
        if not data or data == DONE_SENTINEL:
            return None
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("skipping malformed SSE frame", extra={"frame_size": len(data)})
            return None
        if (
            isinstance(event, dict)
            and event.get("type") == DELTA_EVENT_TYPE
            and isinstance(event.get("delta"), str)
        ):
            self.accumulator.add_delta(event["delta"])
            return event["delta"], self.accumulator.text
        maybe_text = extract_event_text(event)
        if maybe_text:
            self.accumulator.set_fallback(maybe_text)
        return None


def decode_sse_text(raw: str) -> str:
    decoder = DeltaDecoder()
    decoder.feed(raw.encode("utf-8"))
    decoder.close()
    return decoder.result


def decode_payload(raw: str) -> str:
    """One-shot decode of a complete (non-streamed) body: SSE text or a single JSON object."""
    if not raw:
        return ""
    if "data:" in raw:
        return decode_sse_text(raw)
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return ""
    return extract_output_text(payload)


async def iter_stream_events(chunks: AsyncIterator[bytes]) -> AsyncIterator[StreamEvent]:
    """Yield TextDelta per delta (with full text so far), then exactly one StreamCompleted."""
    decoder = DeltaDecoder()
    async for chunk in chunks:
        for delta, text in decoder.feed(chunk):
            yield TextDelta(delta=delta, text=text)
    for delta, text in decoder.close():
        yield TextDelta(delta=delta, text=text)
    yield StreamCompleted(text=decoder.result)
