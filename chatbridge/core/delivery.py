"""Delivery scheduler: rate-limited create/update writes of one streamed reply.

One scheduler instance owns one outbound reply. The first non-blank text creates the
transport message; later texts update that same message at most once per ``interval``
seconds, with a single coalescing trailing write for texts that arrive too early. complete()
always performs one final write with the definitive text.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

DEFAULT_PLACEHOLDER = "I couldn't generate a response."


@runtime_checkable
class ReplyTransport(Protocol):
    """Transport primitives for one reply: create a message, then edit it by handle."""

    async def create(self, text: str) -> Any:
        ...

    async def update(self, handle: Any, text: str) -> None:
        ...


class DeliveryScheduler:
    """Per-reply state: transport handle, last write time, one pending trailing write."""

    def __init__(
        self,
        transport: ReplyTransport,
        interval: float,
        *,
        placeholder: str = DEFAULT_PLACEHOLDER,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport = transport
        self._interval = interval
        self._placeholder = placeholder
        self._clock = clock
        self._handle: Any = None
        self._created = False
        self._last_write = 0.0
        self._pending_text: Optional[str] = None
        self._timer: Optional[asyncio.Task[None]] = None
        self._write_lock = asyncio.Lock()
        self._finished = False
        self._cancelled = False

    @property
    def handle(self) -> Any:
        return self._handle

    @property
    def created(self) -> bool:
        return self._created

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def on_delta(self, text: str) -> None:
        """Called once per decoder update, in arrival order, with the full text so far."""
        if self._finished or self._cancelled:
            return
        if not self._created:
            if not text.strip():
                return
            await self._create(text)
            return
        elapsed = self._clock() - self._last_write
        if elapsed >= self._interval and not self.timer_armed:
            await self._update(text)
            return
        self._pending_text = text
        if not self.timer_armed:
            delay = max(0.0, self._interval - elapsed)
            self._timer = asyncio.create_task(self._trailing_write(delay))

    async def complete(self, final_text: str) -> None:
        """Cancel the trailing write and perform exactly one final write."""
        if self._finished:
            return
        self._finished = True
        await self._cancel_timer()
        if self._created:
            await self._update(final_text)
            return
        await self._create(final_text if final_text.strip() else self._placeholder)

    async def fail(self, message: str) -> None:
        """Best-effort error write; failures are logged and swallowed."""
        self._finished = True
        await self._cancel_timer()
        try:
            if self._created:
                await self._update(message)
            else:
                await self._create(message)
        except Exception as e:
            logger.warning("error reply could not be delivered: %s", e)

    def cancel(self) -> None:
        """Drop the trailing write and ignore later deltas. complete() and fail() still write."""
        self._cancelled = True
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        self._pending_text = None

    async def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        self._pending_text = None
        if timer is None or timer.done():
            return
        timer.cancel()
        try:
            await timer
        except asyncio.CancelledError:
            pass

    async def _trailing_write(self, delay: float) -> None:
        try:
            while True:
                await asyncio.sleep(delay)
                text, self._pending_text = self._pending_text, None
                if text is None:
                    return
                try:
                    await self._update(text)
                except Exception as e:
                    logger.warning("scheduled reply update failed: %s", e)
                # Text that arrived while this write was in flight waits one more interval
                if self._pending_text is None:
                    return
                delay = self._interval
        finally:
            if self._timer is asyncio.current_task():
                self._timer = None

    async def _create(self, text: str) -> None:
        async with self._write_lock:
            if self._created:
                await self._transport.update(self._handle, text)
            else:
                self._handle = await self._transport.create(text)
                self._created = True
            self._last_write = self._clock()

    async def _update(self, text: str) -> None:
        async with self._write_lock:
            await self._transport.update(self._handle, text)
            self._last_write = self._clock()
