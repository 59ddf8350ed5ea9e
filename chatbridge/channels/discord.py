"""Discord channel: discord.py client, answers DMs and mentions, edits the reply while streaming."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import TYPE_CHECKING, Any, Optional

import discord

from chatbridge.channels.base import ChannelService
from chatbridge.core.delivery import DeliveryScheduler
from chatbridge.core.events import Role, Turn
from chatbridge.core.relay import ERROR_REPLY, NO_ANSWER_REPLY, USAGE_HINT_REPLY, last_user_turn, relay_completion
from chatbridge.core.serializer import ConversationSerializer
from chatbridge.models.codex import CompletionClient

if TYPE_CHECKING:
    from chatbridge.config.loader import ServiceSettings

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 2000
TRUNCATION_SUFFIX = "\n\n...(truncated)"
EMPTY_TEXT_PLACEHOLDER = "."
WORKING_REACTION = "\N{EYES}"

_WHITESPACE_RE = re.compile(r"\s+")


def clean_discord_text(text: Optional[str], bot_user_id: Any) -> str:
    """Drop mentions of the bot and collapse whitespace."""
    if not text:
        return ""
    text = re.sub(rf"<@!?{re.escape(str(bot_user_id))}>", "", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def to_discord_text(text: Optional[str]) -> str:
    trimmed = (text or "").strip()
    if not trimmed:
        return EMPTY_TEXT_PLACEHOLDER
    if len(trimmed) <= MAX_MESSAGE_LENGTH:
        return trimmed
    return trimmed[: MAX_MESSAGE_LENGTH - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX


def history_to_turns(messages: list[Any], bot_user_id: Any) -> list[Turn]:
    """Oldest-first channel messages -> turns. Other bots are skipped."""
    turns = []
    for msg in messages:
        author = getattr(msg, "author", None)
        is_self = author is not None and author.id == bot_user_id
        if author is not None and author.bot and not is_self:
            continue
        text = clean_discord_text(msg.content, bot_user_id)
        if not text:
            continue
        turns.append(Turn(role=Role.ASSISTANT if is_self else Role.USER, content=text))
    return turns


class DiscordReplyTransport:
    """Reply to the triggering message once, then edit that reply."""

    def __init__(self, message: Any) -> None:
        self._message = message

    async def create(self, text: str) -> Any:
        return await self._message.reply(to_discord_text(text))

    async def update(self, handle: Any, text: str) -> None:
        await handle.edit(content=to_discord_text(text))


class DiscordBot(ChannelService):
    kind = "discord"

    def __init__(
        self,
        service: "ServiceSettings",
        completion: CompletionClient,
        *,
        max_history: int = 20,
        update_interval: float = 1.0,
        serializer: ConversationSerializer | None = None,
        client: discord.Client | None = None,
    ) -> None:
        super().__init__(service.name)
        if service.discord is None:
            raise ValueError(f"service {service.name!r} has no discord settings")
        self._service = service
        self._completion = completion
        self._max_history = max_history
        self._update_interval = update_interval
        self._serializer = serializer or ConversationSerializer()
        if client is None:
            intents = discord.Intents.default()
            intents.message_content = True
            intents.dm_messages = True
            intents.guild_messages = True
            client = discord.Client(intents=intents)
        self._client = client
        self._client.event(self.on_message)
        self._runner: asyncio.Task[None] | None = None

    async def start(self) -> None:
        assert self._service.discord is not None
        self._runner = asyncio.create_task(self._client.start(self._service.discord.bot_token))
        ready = asyncio.create_task(self._client.wait_until_ready())
        done, _ = await asyncio.wait({self._runner, ready}, return_when=asyncio.FIRST_COMPLETED)
        if ready not in done:
            ready.cancel()
            # start() returned first: login or gateway failure
            self._runner.result()
            raise RuntimeError("discord client stopped before ready")
        user = self._client.user
        logger.info(
            "discord service started",
            extra={
                "service": self.name,
                "bot_user": getattr(user, "id", None),
                "model": self._service.model or "default",
                "web_search": self._service.web_search,
            },
        )

    async def run(self) -> None:
        if self._runner is not None:
            await self._runner

    async def stop(self) -> None:
        self.cancel_deliveries()
        if not self._client.is_closed():
            await self._client.close()
        logger.info("discord service stopped", extra={"service": self.name})

    def is_addressed(self, message: Any) -> bool:
        user = self._client.user
        if user is None or message.author.bot:
            return False
        if isinstance(message.channel, discord.DMChannel):
            return True
        return any(m.id == user.id for m in message.mentions)

    async def on_message(self, message: Any) -> None:
        if not self.is_addressed(message):
            return
        self._serializer.enqueue(f"discord:{message.channel.id}", lambda: self.handle_message(message))

    async def build_context(self, message: Any) -> list[Turn]:
        assert self._client.user is not None
        fetched = [m async for m in message.channel.history(limit=self._max_history)]
        return history_to_turns(list(reversed(fetched)), self._client.user.id)

    async def handle_message(self, message: Any) -> None:
        added_reaction = False
        try:
            await message.add_reaction(WORKING_REACTION)
            added_reaction = True
        except discord.DiscordException as e:
            logger.warning("discord reaction add skipped: %s", e)
        scheduler = self.track(
            DeliveryScheduler(DiscordReplyTransport(message), self._update_interval, placeholder=NO_ANSWER_REPLY)
        )
        try:
            turns = await self.build_context(message)
            if last_user_turn(turns) is None:
                await message.reply(USAGE_HINT_REPLY)
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
            logger.exception("discord message failed: %s", e, extra={"service": self.name})
            await scheduler.fail(ERROR_REPLY)
        finally:
            scheduler.cancel()
            self.untrack(scheduler)
            if added_reaction:
                try:
                    await message.remove_reaction(WORKING_REACTION, self._client.user)
                except discord.DiscordException as e:
                    logger.warning("discord reaction remove skipped: %s", e)
