"""Conversation serializer: one in-flight task per conversation key, FIFO per key."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


class ConversationSerializer:
    """Chains tasks per key. Distinct keys run concurrently; a failure only fails its own future."""

    def __init__(self) -> None:
        self._tails: dict[str, asyncio.Task[Any]] = {}

    def enqueue(self, key: str, task: TaskFactory) -> asyncio.Future[Any]:
        """Schedule `task()` after everything already queued under `key`. Returns its future."""
        previous = self._tails.get(key)
        runner = asyncio.create_task(self._run_after(previous, task), name=f"conversation:{key}")
        self._tails[key] = runner
        runner.add_done_callback(lambda t: self._release(key, t))
        return runner

    def pending_keys(self) -> list[str]:
        return list(self._tails)

    def is_idle(self, key: str) -> bool:
        return key not in self._tails

    async def drain(self) -> None:
        """Wait until every queued task has finished. Task failures are not raised here."""
        while self._tails:
            await asyncio.wait(set(self._tails.values()))

    @staticmethod
    async def _run_after(previous: asyncio.Task[Any] | None, task: TaskFactory) -> Any:
        try:
            if previous is not None and not previous.done():
                # wait() neither raises the predecessor's error nor cancels it if we are cancelled
                await asyncio.wait({previous})
            return await task()
        finally:
            # A runner cancelled early must not finish before its predecessor does
            while previous is not None and not previous.done():
                try:
                    await asyncio.wait({previous})
                except asyncio.CancelledError:
                    continue

    def _release(self, key: str, finished: asyncio.Task[Any]) -> None:
        if self._tails.get(key) is finished:
            del self._tails[key]
        if not finished.cancelled() and finished.exception() is not None:
            logger.debug("conversation task failed", extra={"conversation_key": key})
