"""IRC channel: IrcSession transport, per-conversation queue and in-memory turn history."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from chatbridge.channels.base import ChannelService
from chatbridge.channels.irc_session import AddressedMessage, IrcSession
from chatbridge.core.events import Role, Turn
from chatbridge.core.relay import ERROR_REPLY, NO_ANSWER_REPLY
from chatbridge.core.serializer import ConversationSerializer
from chatbridge.memory.short_term import ConversationWindow
from chatbridge.models.codex import CompletionClient

if TYPE_CHECKING:
    from chatbridge.config.loader import ServiceSettings

logger = logging.getLogger(__name__)


class IrcBot(ChannelService):
    """Answers DMs and nick mentions. Replies are sent once complete (IRC has no message edits)."""

    kind = "irc"

    def __init__(
        self,
        service: "ServiceSettings",
        completion: CompletionClient,
        *,
        max_history: int = 20,
        serializer: ConversationSerializer | None = None,
        history: ConversationWindow | None = None,
        session: IrcSession | None = None,
    ) -> None:
        super().__init__(service.name)
        if service.irc is None:
            raise ValueError(f"service {service.name!r} has no irc settings")
        self._service = service
        self._completion = completion
        self._serializer = serializer or ConversationSerializer()
        self._history = history or ConversationWindow(max_history)
        irc = service.irc
        self.session = session or IrcSession(
            irc.server,
            irc.nick,
            port=irc.port,
            tls=irc.tls,
            username=irc.username,
            realname=irc.realname,
            password=irc.password,
            channels=irc.channels,
            sasl_enabled=irc.sasl.enabled,
            sasl_username=irc.sasl.username,
            sasl_password=irc.sasl.password,
            connect_timeout=irc.connect_timeout,
            max_message_bytes=irc.max_message_length,
            max_nick_retries=irc.max_nick_retries,
            name=service.name,
        )
        self.session.on_message = self.on_message

    @property
    def history(self) -> ConversationWindow:
        return self._history

    async def start(self) -> None:
        await self.session.start()
        logger.info(
            "irc service started",
            extra={
                "service": self.name,
                "model": self._service.model or "default",
                "web_search": self._service.web_search,
                "system_prompt": "service" if self._service.system_prompt else "default",
            },
        )

    async def run(self) -> None:
        await self.session.wait_closed()

    async def stop(self) -> None:
        self.cancel_deliveries()
        await self.session.stop()

    def on_message(self, message: AddressedMessage) -> None:
        logger.debug(
            "irc message",
            extra={"service": self.name, "target": message.target, "direct": message.is_direct},
        )
        self._serializer.enqueue(message.conversation_key, lambda: self.answer(message))

    async def answer(self, message: AddressedMessage) -> None:
        key = message.conversation_key
        user_content = message.text if message.is_direct else f"{message.sender}: {message.text}"
        turns = [*self._history.get_turns(key), Turn(role=Role.USER, content=user_content)]
        try:
            answer = await self._completion.complete(
                turns,
                model=self._service.model,
                web_search=self._service.web_search,
                system_prompt=self._service.system_prompt,
            )
            answer = answer or NO_ANSWER_REPLY
            self._history.append(key, Role.USER, user_content)
            self._history.append(key, Role.ASSISTANT, answer)
            await self.session.send_message(message.reply_target, answer)
        except Exception as e:
            logger.exception(
                "irc reply failed: %s", e, extra={"service": self.name, "target": message.reply_target}
            )
            try:
                await self.session.send_message(message.reply_target, ERROR_REPLY)
            except (ConnectionError, OSError) as send_error:
                logger.warning("irc error reply not sent: %s", send_error, extra={"service": self.name})
