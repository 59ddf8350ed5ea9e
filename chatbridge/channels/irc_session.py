"""IRC client session: registration, CAP/SASL negotiation, keepalive, PRIVMSG routing, shutdown.

State machine::

    CONNECTING -> [CAP_NEGOTIATION] -> REGISTERING -> JOINING -> READY
                                 any state -> CLOSED

A nick collision (433) loops within REGISTERING. Closing the socket before READY rejects
the readiness future; closing it after READY without stop() surfaces ConnectionLostError
from wait_closed().
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import ssl
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

from chatbridge.channels.irc_protocol import (
    DEFAULT_MAX_MESSAGE_BYTES,
    ParsedLine,
    build_sasl_plain_chunks,
    has_capability,
    is_mentioning,
    parse_line,
    sanitize_line,
    split_message,
    strip_mention,
)
from chatbridge.core.errors import ConnectionLostError, ProtocolError

logger = logging.getLogger(__name__)

SASL_FAILURE_NUMERICS = frozenset({"904", "905", "906", "907", "908"})
DEFAULT_SHUTDOWN_GRACE = 2.0


class SessionState(str, Enum):
    CONNECTING = "connecting"
    CAP_NEGOTIATION = "cap_negotiation"
    REGISTERING = "registering"
    JOINING = "joining"
    READY = "ready"
    CLOSED = "closed"


@dataclass(frozen=True)
class AddressedMessage:
    """A PRIVMSG meant for the bot, mention already stripped."""

    sender: str
    target: str
    text: str
    is_direct: bool

    @property
    def reply_target(self) -> str:
        return self.sender if self.is_direct else self.target

    @property
    def conversation_key(self) -> str:
        if self.is_direct:
            return f"irc:dm:{self.sender.lower()}"
        return f"irc:channel:{self.target.lower()}"


MessageHandler = Callable[[AddressedMessage], None]


class IrcSession:
    """One IRC connection. Owns its socket, CAP buffer and SASL chunk queue."""

    def __init__(
        self,
        host: str,
        nick: str,
        *,
        port: int | None = None,
        tls: bool = False,
        username: str | None = None,
        realname: str = "chatbridge",
        password: str | None = None,
        channels: Iterable[str] = (),
        sasl_username: str | None = None,
        sasl_password: str | None = None,
        sasl_enabled: bool | None = None,
        connect_timeout: float = 15.0,
        max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
        max_nick_retries: int | None = None,
        shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE,
        on_message: MessageHandler | None = None,
        name: str = "irc",
        rng: random.Random | None = None,
    ) -> None:
        if not nick:
            raise ValueError("nick is required")
        self.name = name
        self.host = host
        self.tls = tls
        self.port = port or (6697 if tls else 6667)
        self.requested_nick = nick
        self.nick = nick
        self.username = username or nick
        self.realname = realname
        self.password = password
        self.channels = [c for c in channels if c]
        self.sasl_enabled = bool(sasl_enabled or sasl_username or sasl_password)
        self.sasl_username = sasl_username or self.username
        self.sasl_password = sasl_password or ""
        self.connect_timeout = connect_timeout
        self.max_message_bytes = max_message_bytes
        self.max_nick_retries = max_nick_retries
        self.shutdown_grace = shutdown_grace
        self.on_message = on_message
        self._rng = rng or random.Random()

        self.state = SessionState.CONNECTING
        self.joined: set[str] = set()
        self._cap_ls_buffer = ""
        self._cap_ended = not self.sasl_enabled
        self._sasl_started = False
        self._sasl_chunks: Optional[list[str]] = None
        self._nick_retries = 0

        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task[None] | None = None
        self._ready: asyncio.Future[None] | None = None
        self._closed: asyncio.Future[None] | None = None
        self._stop_requested = False

    # -- lifecycle -------------------------------------------------------------------------

    async def start(self) -> None:
        """Connect and wait until registered and joined. Raises on timeout or protocol failure."""
        self._init_futures()
        try:
            await asyncio.wait_for(self._connect_and_wait(), self.connect_timeout)
        except asyncio.TimeoutError:
            self._reject_ready(ProtocolError(f"IRC connect timeout after {self.connect_timeout}s"))
            self._abort()
            raise ProtocolError(f"IRC connect timeout after {self.connect_timeout}s") from None
        except BaseException:
            self._abort()
            raise
        logger.info(
            "irc session ready",
            extra={
                "service": self.name,
                "server": f"{self.host}:{self.port}",
                "tls": self.tls,
                "sasl": self.sasl_enabled,
                "nick": self.nick,
                "channels": len(self.channels),
            },
        )

    async def _connect_and_wait(self) -> None:
        ssl_context = ssl.create_default_context() if self.tls else None
        try:
            reader, writer = await asyncio.open_connection(
                self.host,
                self.port,
                ssl=ssl_context,
                server_hostname=self.host if self.tls else None,
            )
        except OSError as e:
            self._reject_ready(e)
            raise
        self.attach(reader, writer)
        assert self._ready is not None
        await asyncio.shield(self._ready)

    def attach(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Take ownership of connected streams, send registration and start reading."""
        self._init_futures()
        self._reader = reader
        self._writer = writer
        self._on_connected()
        self._read_task = asyncio.create_task(self._read_loop(), name=f"irc-read:{self.name}")

    def _init_futures(self) -> None:
        loop = asyncio.get_running_loop()
        if self._ready is None:
            self._ready = loop.create_future()
        if self._closed is None:
            self._closed = loop.create_future()

    async def wait_ready(self) -> None:
        self._init_futures()
        assert self._ready is not None
        await asyncio.shield(self._ready)

    async def wait_closed(self) -> None:
        """Returns when the session ends; raises ConnectionLostError on an unrequested close after READY."""
        self._init_futures()
        assert self._closed is not None
        await asyncio.shield(self._closed)

    @property
    def is_ready(self) -> bool:
        return self.state == SessionState.READY

    async def stop(self, reason: str = "shutting down") -> None:
        """QUIT, wait up to the grace period for the server to close, then abort. Idempotent."""
        if self._stop_requested:
            return
        self._stop_requested = True
        writer = self._writer
        if writer is None or writer.is_closing():
            self._mark_closed()
            return
        self.send_raw(f"QUIT :{reason}")
        with contextlib.suppress(ConnectionError, OSError):
            await writer.drain()
        if writer.can_write_eof():
            with contextlib.suppress(ConnectionError, OSError, RuntimeError):
                writer.write_eof()
        try:
            await asyncio.wait_for(self.wait_closed(), self.shutdown_grace)
        except asyncio.TimeoutError:
            logger.warning("irc server did not close in time, aborting", extra={"service": self.name})
            self._abort()
        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._read_task
        self._mark_closed()
        logger.info("irc session stopped", extra={"service": self.name})

    def _abort(self) -> None:
        writer = self._writer
        if writer is not None and not writer.is_closing():
            writer.transport.abort()

    # -- outbound --------------------------------------------------------------------------

    def send_raw(self, line: str) -> None:
        writer = self._writer
        if writer is None or writer.is_closing():
            return
        writer.write((sanitize_line(line) + "\r\n").encode("utf-8"))

    async def send_message(self, target: str, text: str) -> None:
        """PRIVMSG `text` to `target`, chunked at max_message_bytes. Blank text sends nothing."""
        normalized = sanitize_line(text).strip()
        if not normalized:
            return
        for chunk in split_message(normalized, self.max_message_bytes):
            self.send_raw(f"PRIVMSG {target} :{chunk}")
        if self._writer is not None and not self._writer.is_closing():
            await self._writer.drain()

    # -- inbound ---------------------------------------------------------------------------

    async def _read_loop(self) -> None:
        assert self._reader is not None
        error: BaseException | None = None
        discarding = False
        try:
            while True:
                try:
                    data = await self._reader.readuntil(b"\n")
                except asyncio.IncompleteReadError as e:
                    data = e.partial
                    if not data or discarding:
                        break
                except asyncio.LimitOverrunError as e:
                    # Drop the oversized line; its tail up to the next newline is skipped too
                    await self._reader.readexactly(e.consumed)
                    discarding = True
                    logger.warning(
                        "irc line over read limit dropped", extra={"service": self.name, "bytes": e.consumed}
                    )
                    continue
                if discarding:
                    discarding = False
                    continue
                line = data.decode("utf-8", errors="replace").rstrip("\r\n")
                if not line:
                    continue
                try:
                    self.handle_line(line)
                except Exception as e:
                    logger.exception("irc line handling failed: %s", e, extra={"service": self.name})
        except (ConnectionError, OSError) as e:
            error = e
            logger.error("irc socket error: %s", e, extra={"service": self.name})
        finally:
            self._on_socket_closed(error)

    def _on_socket_closed(self, error: BaseException | None) -> None:
        was_ready = self.state == SessionState.READY
        self.state = SessionState.CLOSED
        if self._writer is not None and not self._writer.is_closing():
            self._writer.close()
        if self._stop_requested:
            self._mark_closed()
            return
        if self._ready is not None and not self._ready.done():
            self._reject_ready(error or ProtocolError("IRC connection closed before ready"))
            self._mark_closed()
            return
        if not was_ready:
            self._mark_closed()
            return
        logger.error("irc connection closed unexpectedly", extra={"service": self.name})
        if self._closed is not None and not self._closed.done():
            self._closed.set_exception(
                ConnectionLostError(f"IRC connection closed unexpectedly name={self.name}")
            )

    def _mark_closed(self) -> None:
        self.state = SessionState.CLOSED
        if self._closed is not None and not self._closed.done():
            self._closed.set_result(None)

    def handle_line(self, raw: str) -> None:
        parsed = parse_line(raw)
        if parsed is None or self.state == SessionState.CLOSED:
            return
        handler = self._handlers.get(parsed.command)
        if handler is not None:
            handler(self, parsed)

    def _on_connected(self) -> None:
        if self.password:
            self.send_raw(f"PASS {self.password}")
        if self.sasl_enabled:
            self.send_raw("CAP LS 302")
            self.state = SessionState.CAP_NEGOTIATION
        else:
            self.state = SessionState.REGISTERING
        self.send_raw(f"NICK {self.nick}")
        self.send_raw(f"USER {self.username} 0 * :{self.realname}")

    def _on_ping(self, parsed: ParsedLine) -> None:
        self.send_raw(f"PONG :{parsed.param(0)}")

    def _on_welcome(self, parsed: ParsedLine) -> None:
        self._end_cap_negotiation()
        if parsed.param(0):
            self.nick = parsed.param(0)
        if self.state != SessionState.READY:
            self.state = SessionState.JOINING
            for channel in self.channels:
                if channel.lower() not in self.joined:
                    self.joined.add(channel.lower())
                    self.send_raw(f"JOIN {channel}")
            self.state = SessionState.READY
        self._resolve_ready()

    def _on_nick_in_use(self, parsed: ParsedLine) -> None:
        if self.state == SessionState.READY:
            return
        self._nick_retries += 1
        if self.max_nick_retries is not None and self._nick_retries > self.max_nick_retries:
            self._close_with_error(f"IRC nick collision limit reached after {self.max_nick_retries} retries")
            return
        previous = self.nick
        candidate = previous
        while candidate == previous:
            candidate = f"{self.requested_nick}_{self._rng.randrange(1000)}"
        self.nick = candidate
        logger.info("irc nick in use, retrying", extra={"service": self.name, "nick": candidate})
        self.send_raw(f"NICK {self.nick}")

    def _on_cap(self, parsed: ParsedLine) -> None:
        sub_command = parsed.param(1).upper()
        has_more = parsed.param(2) == "*"
        capability_list = parsed.param(3) if has_more else parsed.param(2)

        if sub_command == "LS":
            self._cap_ls_buffer = f"{self._cap_ls_buffer} {capability_list}".strip()
            if has_more:
                return
            supported, self._cap_ls_buffer = has_capability(self._cap_ls_buffer, "sasl"), ""
            if not self.sasl_enabled:
                self._end_cap_negotiation()
                return
            if not supported:
                self._close_with_error(f"IRC server does not support SASL for name={self.name}")
                return
            self.send_raw("CAP REQ :sasl")
        elif sub_command == "ACK":
            if not self.sasl_enabled or not has_capability(capability_list, "sasl"):
                self._end_cap_negotiation()
                return
            self._sasl_started = True
            self.send_raw("AUTHENTICATE PLAIN")
        elif sub_command == "NAK" and self.sasl_enabled:
            self._close_with_error(f"IRC server rejected SASL capability for name={self.name}")

    def _on_authenticate(self, parsed: ParsedLine) -> None:
        if not self._sasl_started or parsed.param(0) != "+":
            return
        if self._sasl_chunks is None:
            self._sasl_chunks = build_sasl_plain_chunks(self.sasl_username, self.sasl_password)
        if self._sasl_chunks:
            self.send_raw(f"AUTHENTICATE {self._sasl_chunks.pop(0)}")

    def _on_sasl_success(self, parsed: ParsedLine) -> None:
        self._end_cap_negotiation()

    def _on_sasl_failure(self, parsed: ParsedLine) -> None:
        detail = parsed.param(-1) or "SASL authentication failed"
        self._close_with_error(f"IRC SASL failed: {detail}")

    def _on_nick(self, parsed: ParsedLine) -> None:
        old_nick = parsed.nick
        new_nick = parsed.param(0)
        if old_nick and new_nick and old_nick.lower() == self.nick.lower():
            self.nick = new_nick

    def _on_error(self, parsed: ParsedLine) -> None:
        detail = parsed.param(0) or "server error"
        logger.error("irc server error: %s", detail, extra={"service": self.name})
        self._reject_ready(ProtocolError(f"IRC server error: {detail}"))

    def _on_privmsg(self, parsed: ParsedLine) -> None:
        if self.state != SessionState.READY or self.on_message is None:
            return
        message = self.address(parsed)
        if message is not None:
            self.on_message(message)

    _handlers: dict[str, Callable[["IrcSession", ParsedLine], None]] = {
        "PING": _on_ping,
        "001": _on_welcome,
        "433": _on_nick_in_use,
        "CAP": _on_cap,
        "AUTHENTICATE": _on_authenticate,
        "903": _on_sasl_success,
        **dict.fromkeys(SASL_FAILURE_NUMERICS, _on_sasl_failure),
        "NICK": _on_nick,
        "ERROR": _on_error,
        "PRIVMSG": _on_privmsg,
    }

    def address(self, parsed: ParsedLine) -> AddressedMessage | None:
        """AddressedMessage if a PRIVMSG is for the bot (DM or whole-token nick mention)."""
        sender = parsed.nick
        target = parsed.param(0)
        text = parsed.param(1)
        if not sender or not target:
            return None
        if sender.lower() == self.nick.lower():
            return None
        is_direct = target.lower() == self.nick.lower()
        if not is_direct and not is_mentioning(text, self.nick):
            return None
        cleaned = text.strip() if is_direct else strip_mention(text, self.nick)
        if not cleaned:
            return None
        return AddressedMessage(sender=sender, target=target, text=cleaned, is_direct=is_direct)

    # -- negotiation helpers ---------------------------------------------------------------

    def _end_cap_negotiation(self) -> None:
        if self._cap_ended:
            return
        self._cap_ended = True
        self.send_raw("CAP END")
        if self.state == SessionState.CAP_NEGOTIATION:
            self.state = SessionState.REGISTERING

    def _close_with_error(self, message: str) -> None:
        logger.error(message, extra={"service": self.name})
        self._reject_ready(ProtocolError(message))
        self.send_raw(f"QUIT :{message}")
        if self._writer is not None and not self._writer.is_closing():
            self._writer.close()

    def _resolve_ready(self) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(None)

    def _reject_ready(self, error: BaseException) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(error)
            # retrieved by start()/wait_ready(); silence "never retrieved" when nobody waits
            self._ready.exception()
