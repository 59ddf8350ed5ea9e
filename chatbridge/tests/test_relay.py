"""Tests for core/relay: stream events flow into the delivery scheduler."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from chatbridge.core.events import Role, StreamCompleted, TextDelta, Turn
from chatbridge.core.relay import NO_ANSWER_REPLY, last_user_turn, relay_completion


def _completion(*events):
    async def stream(*args, **kwargs):
        for event in events:
            yield event

    completion = MagicMock()
    completion.stream = MagicMock(side_effect=stream)
    return completion


def test_last_user_turn():
    turns = [Turn(role=Role.USER, content="q1"), Turn(role=Role.ASSISTANT, content="a1")]
    assert last_user_turn(turns).content == "q1"
    assert last_user_turn([Turn(role=Role.ASSISTANT, content="a")]) is None
    assert last_user_turn([]) is None


@pytest.mark.asyncio
async def test_relay_forwards_deltas_and_final_text():
    completion = _completion(
        TextDelta(delta="Hel", text="Hel"),
        TextDelta(delta="lo", text="Hello"),
        StreamCompleted(text="Hello"),
    )
    scheduler = MagicMock()
    scheduler.on_delta = AsyncMock()
    scheduler.complete = AsyncMock()
    turns = [Turn(role=Role.USER, content="hi")]

    final = await relay_completion(completion, turns, scheduler, model="m", web_search=True, system_prompt="p")

    assert final == "Hello"
    assert [c.args[0] for c in scheduler.on_delta.await_args_list] == ["Hel", "Hello"]
    scheduler.complete.assert_awaited_once_with("Hello")
    completion.stream.assert_called_once_with(turns, model="m", web_search=True, system_prompt="p")


@pytest.mark.asyncio
async def test_relay_empty_answer_uses_placeholder():
    scheduler = MagicMock()
    scheduler.on_delta = AsyncMock()
    scheduler.complete = AsyncMock()
    final = await relay_completion(_completion(StreamCompleted(text="")), [], scheduler)
    assert final == NO_ANSWER_REPLY
    scheduler.complete.assert_awaited_once_with(NO_ANSWER_REPLY)
