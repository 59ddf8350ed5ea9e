"""Glue between the completion stream and the delivery scheduler, plus user-facing reply texts."""

from __future__ import annotations

import logging
from typing import Sequence

from chatbridge.core.delivery import DeliveryScheduler
from chatbridge.core.events import StreamCompleted, TextDelta, Turn
from chatbridge.models.codex import CompletionClient

logger = logging.getLogger(__name__)

NO_ANSWER_REPLY = "I couldn't generate a response."
ERROR_REPLY = "Something went wrong. Please try again in a moment."
USAGE_HINT_REPLY = "Please include a question, e.g. `@bot summarize today's tasks`."


def last_user_turn(turns: Sequence[Turn]) -> Turn | None:
    for turn in reversed(turns):
        if turn.role == "user":
            return turn
    return None


async def relay_completion(
    completion: CompletionClient,
    turns: Sequence[Turn],
    scheduler: DeliveryScheduler,
    *,
    model: str | None = None,
    web_search: bool = False,
    system_prompt: str | None = None,
) -> str:
    """Stream a completion into `scheduler` and perform the final write. Returns the final text."""
    streamed = ""
    final = ""
    async for event in completion.stream(turns, model=model, web_search=web_search, system_prompt=system_prompt):
        if isinstance(event, TextDelta):
            streamed = event.text
            await scheduler.on_delta(event.text)
        elif isinstance(event, StreamCompleted):
            final = event.text
    final_text = final or streamed.strip() or NO_ANSWER_REPLY
    await scheduler.complete(final_text)
    return final_text
