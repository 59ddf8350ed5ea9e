"""Slack channel: Socket Mode app, thread/DM context from Slack history, streamed replies via chat.update."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import TYPE_CHECKING, Any, Optional

from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from slack_bolt.async_app import AsyncApp
from slack_sdk.errors import SlackApiError

from chatbridge.channels.base import ChannelService
from chatbridge.core.delivery import DeliveryScheduler
from chatbridge.core.events import Role, Turn
from chatbridge.core.relay import ERROR_REPLY, NO_ANSWER_REPLY, USAGE_HINT_REPLY, last_user_turn, relay_completion
from chatbridge.core.serializer import ConversationSerializer
from chatbridge.models.codex import CompletionClient

if TYPE_CHECKING:
    from chatbridge.config.loader import ServiceSettings

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 39000
TRUNCATION_SUFFIX = "\n\n...(truncated)"
EMPTY_TEXT_PLACEHOLDER = "."
WORKING_REACTION = "eyes"

_MENTION_RE = re.compile(r"<@[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")


def clean_slack_text(text: Optional[str]) -> str:
    """Drop user mentions and collapse whitespace."""
    if not text:
        return ""
    return _WHITESPACE_RE.sub(" ", _MENTION_RE.sub("", text)).strip()


def to_slack_text(text: Optional[str]) -> str:
    """Slack rejects empty bodies and very long messages."""
    trimmed = (text or "").strip()
    if not trimmed:
        return EMPTY_TEXT_PLACEHOLDER
    if len(trimmed) <= MAX_MESSAGE_LENGTH:
        return trimmed
    return trimmed[: MAX_MESSAGE_LENGTH - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX


def is_direct_message(event: dict[str, Any]) -> bool:
    return event.get("channel_type") == "im"


def is_from_bot(event: dict[str, Any], bot_user_id: Optional[str]) -> bool:
    return (
        event.get("subtype") == "bot_message"
        or bool(event.get("bot_id"))
        or bool(bot_user_id and event.get("user") == bot_user_id)
    )


def is_mentioning_bot(text: str, bot_user_id: Optional[str]) -> bool:
    return bool(bot_user_id and f"<@{bot_user_id}>" in (text or ""))


def conversation_key(event: dict[str, Any]) -> str:
    if is_direct_message(event) and not event.get("thread_ts"):
        return f"slack:dm:{event.get('channel')}"
    return f"slack:{event.get('channel')}:{event.get('thread_ts') or event.get('ts')}"


def messages_to_turns(
    messages: list[dict[str, Any]], bot_user_id: Optional[str], *, skip_subtypes: bool = False
) -> list[Turn]:
    turns = []
    for message in messages:
        if skip_subtypes and message.get("subtype") and message.get("subtype") != "bot_message":
            continue
        text = clean_slack_text(message.get("text"))
        if not text:
            continue
        is_assistant = bool(bot_user_id and message.get("user") == bot_user_id) or bool(message.get("bot_id"))
        turns.append(Turn(role=Role.ASSISTANT if is_assistant else Role.USER, content=text))
    return turns


class SlackReplyTransport:
    """chat.postMessage once, then chat.update on the returned ts."""

    def __init__(self, client: Any, channel: str, thread_ts: Optional[str]) -> None:
        self._client = client
        self._channel = channel
        self._thread_ts = thread_ts

    async def create(self, text: str) -> str:
        kwargs: dict[str, Any] = {"channel": self._channel, "text": to_slack_text(text), "mrkdwn": True}
        if self._thread_ts:
            kwargs["thread_ts"] = self._thread_ts
        resp = await self._client.chat_postMessage(**kwargs)
        return resp["ts"]

    async def update(self, handle: str, text: str) -> None:
        await self._client.chat_update(channel=self._channel, ts=handle, text=to_slack_text(text), mrkdwn=True)


class SlackBot(ChannelService):
    kind = "slack"

    def __init__(
        self,
        service: "ServiceSettings",
        completion: CompletionClient,
        *,
        max_history: int = 20,
        update_interval: float = 0.8,
        serializer: ConversationSerializer | None = None,
        app: AsyncApp | None = None,
    ) -> None:
        super().__init__(service.name)
        if service.slack is None:
            raise ValueError(f"service {service.name!r} has no slack settings")
        self._service = service
        self._completion = completion
        self._max_history = max_history
        self._update_interval = update_interval
        self._serializer = serializer or ConversationSerializer()
        self._app = app or AsyncApp(token=service.slack.bot_token)
        self._handler: AsyncSocketModeHandler | None = None
        self._stopped = asyncio.Event()
        self.bot_user_id: Optional[str] = None
        self._app.event("app_mention")(self.on_app_mention)
        self._app.event("message")(self.on_message)
        self._app.error(self.on_error)

    async def start(self) -> None:
        assert self._service.slack is not None
        auth = await self._app.client.auth_test(token=self._service.slack.bot_token)
        self.bot_user_id = auth.get("user_id")
        self._handler = AsyncSocketModeHandler(self._app, self._service.slack.app_token)
        await self._handler.connect_async()
        logger.info(
            "slack service started",
            extra={
                "service": self.name,
                "bot_user": self.bot_user_id,
                "model": self._service.model or "default",
                "web_search": self._service.web_search,
            },
        )

    async def run(self) -> None:
        await self._stopped.wait()

    async def stop(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        self.cancel_deliveries()
        if self._handler is not None:
            await self._handler.close_async()
        logger.info("slack service stopped", extra={"service": self.name})

    async def on_app_mention(self, event: dict[str, Any], client: Any) -> None:
        logger.info(
            "slack app_mention",
            extra={"service": self.name, "channel": event.get("channel"), "ts": event.get("ts")},
        )
        self._enqueue(event, client, "app_mention")

    async def on_message(self, event: dict[str, Any], client: Any) -> None:
        logger.debug(
            "slack message",
            extra={
                "service": self.name,
                "subtype": event.get("subtype"),
                "channel": event.get("channel"),
                "thread_ts": event.get("thread_ts"),
            },
        )
        if event.get("subtype") and event.get("subtype") != "thread_broadcast":
            return
        if is_from_bot(event, self.bot_user_id):
            return
        if is_direct_message(event):
            self._enqueue(event, client, "message_im")
            return
        if not event.get("thread_ts"):
            return
        # Mentions arrive separately as app_mention
        if is_mentioning_bot(event.get("text") or "", self.bot_user_id):
            return
        if not await self.has_bot_reply_in_thread(client, event):
            return
        self._enqueue(event, client, "message")

    async def on_error(self, error: Exception) -> None:
        logger.error("slack app error: %s", error, extra={"service": self.name})

    def _enqueue(self, event: dict[str, Any], client: Any, source: str) -> "asyncio.Future[Any]":
        return self._serializer.enqueue(
            conversation_key(event), lambda: self.handle_conversation(event, client, source)
        )

    async def build_context(self, client: Any, event: dict[str, Any]) -> list[Turn]:
        if is_direct_message(event) and not event.get("thread_ts"):
            try:
                history = await client.conversations_history(
                    channel=event["channel"], limit=self._max_history
                )
            except Exception as e:
                logger.warning("slack dm history load failed, using current message: %s", e)
                fallback = clean_slack_text(event.get("text"))
                return [Turn(role=Role.USER, content=fallback)] if fallback else []
            messages = list(reversed(history.get("messages") or []))
            return messages_to_turns(messages, self.bot_user_id, skip_subtypes=True)
        replies = await client.conversations_replies(
            channel=event["channel"],
            ts=event.get("thread_ts") or event.get("ts"),
            limit=self._max_history,
        )
        return messages_to_turns(replies.get("messages") or [], self.bot_user_id)

    async def has_bot_reply_in_thread(self, client: Any, event: dict[str, Any]) -> bool:
        if not event.get("thread_ts") or not self.bot_user_id:
            return False
        replies = await client.conversations_replies(
            channel=event["channel"], ts=event["thread_ts"], limit=self._max_history
        )
        return any(
            m.get("user") == self.bot_user_id and m.get("ts") != event.get("ts")
            for m in replies.get("messages") or []
        )

    async def handle_conversation(self, event: dict[str, Any], client: Any, source: str) -> None:
        channel = event["channel"]
        in_dm = is_direct_message(event) and not event.get("thread_ts")
        thread_ts = None if in_dm else (event.get("thread_ts") or event.get("ts"))
        added_reaction = await self._add_reaction(client, event)
        scheduler = self.track(
            DeliveryScheduler(
                SlackReplyTransport(client, channel, thread_ts),
                self._update_interval,
                placeholder=NO_ANSWER_REPLY,
            )
        )
        try:
            turns = await self.build_context(client, event)
            if last_user_turn(turns) is None:
                await client.chat_postMessage(
                    channel=channel, thread_ts=event.get("thread_ts") or event.get("ts"), text=USAGE_HINT_REPLY
                )
                return
            await relay_completion(
                self._completion,
                turns,
                scheduler,
                model=self._service.model,
                web_search=self._service.web_search,
                system_prompt=self._service.system_prompt,
            )
        except Exception as e:
            logger.exception("slack %s failed: %s", source, e, extra={"service": self.name, "channel": channel})
            await scheduler.fail(ERROR_REPLY)
        finally:
            scheduler.cancel()
            self.untrack(scheduler)
            if added_reaction:
                await self._remove_reaction(client, event)

    async def _add_reaction(self, client: Any, event: dict[str, Any]) -> bool:
        try:
            await client.reactions_add(channel=event["channel"], timestamp=event["ts"], name=WORKING_REACTION)
            return True
        except SlackApiError as e:
            logger.warning("slack reaction add skipped: %s", e.response.get("error") if e.response else e)
        except Exception as e:
            logger.warning("slack reaction add skipped: %s", e)
        return False

    async def _remove_reaction(self, client: Any, event: dict[str, Any]) -> None:
        try:
            await client.reactions_remove(channel=event["channel"], timestamp=event["ts"], name=WORKING_REACTION)
        except Exception as e:
            logger.warning("slack reaction remove skipped: %s", e)
