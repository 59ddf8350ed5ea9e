"""Tests for channels/irc_session: registration, CAP/SASL, nick collisions, routing, shutdown."""

import asyncio
import random
from unittest.mock import MagicMock

import pytest

from chatbridge.channels.irc_session import AddressedMessage, IrcSession, SessionState
from chatbridge.core.errors import ConnectionLostError, ProtocolError


class FakeWriter:
    """Records outbound lines; closing feeds EOF to the paired reader like a real socket would."""

    def __init__(self, reader: asyncio.StreamReader) -> None:
        self.reader = reader
        self.lines: list[str] = []
        self.closing = False
        self.transport = MagicMock()
        self.transport.abort.side_effect = self._close

    def write(self, data: bytes) -> None:
        for line in data.decode("utf-8").split("\r\n"):
            if line:
                self.lines.append(line)

    async def drain(self) -> None:
        return None

    def is_closing(self) -> bool:
        return self.closing

    def can_write_eof(self) -> bool:
        return True

    def write_eof(self) -> None:
        self._close()

    def close(self) -> None:
        self._close()

    def _close(self) -> None:
        if not self.closing:
            self.closing = True
            self.reader.feed_eof()


def _attach(session: IrcSession) -> tuple[asyncio.StreamReader, FakeWriter]:
    reader = asyncio.StreamReader()
    writer = FakeWriter(reader)
    session.attach(reader, writer)
    return reader, writer


async def _feed(reader: asyncio.StreamReader, *lines: str) -> None:
    for line in lines:
        reader.feed_data((line + "\r\n").encode("utf-8"))
    # let the read loop process everything
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_plain_registration_joins_and_becomes_ready():
    session = IrcSession("irc.example.net", "bot", channels=["#a", "#b"], password="secret")
    reader, writer = _attach(session)
    assert writer.lines[:3] == ["PASS secret", "NICK bot", "USER bot 0 * :chatbridge"]
    assert session.state == SessionState.REGISTERING

    await _feed(reader, ":server 001 bot :Welcome")
    await asyncio.wait_for(session.wait_ready(), 1.0)
    assert session.is_ready
    assert "JOIN #a" in writer.lines and "JOIN #b" in writer.lines
    assert session.joined == {"#a", "#b"}

    # a second 001 must not re-join
    await _feed(reader, ":server 001 bot :Welcome again")
    assert writer.lines.count("JOIN #a") == 1


@pytest.mark.asyncio
async def test_ping_gets_pong():
    session = IrcSession("h", "bot")
    reader, writer = _attach(session)
    await _feed(reader, "PING :token123")
    assert "PONG :token123" in writer.lines


@pytest.mark.asyncio
async def test_oversized_line_is_dropped_without_closing():
    session = IrcSession("h", "bot")
    reader, writer = _attach(session)
    await _feed(reader, ":server 001 bot :Welcome")
    await session.wait_ready()
    await _feed(reader, ":spammer PRIVMSG #a :" + "x" * 70_000, "PING :after")
    assert "PONG :after" in writer.lines
    assert session.is_ready
    assert not writer.closing


@pytest.mark.asyncio
async def test_sasl_negotiation_with_multiline_cap_ls():
    session = IrcSession("h", "bot", sasl_username="acct", sasl_password="pw")
    reader, writer = _attach(session)
    assert writer.lines[0] == "CAP LS 302"
    assert session.state == SessionState.CAP_NEGOTIATION

    await _feed(reader, ":server CAP * LS * :multi-prefix away-notify")
    assert "CAP REQ :sasl" not in writer.lines
    await _feed(reader, ":server CAP * LS :sasl=PLAIN")
    assert "CAP REQ :sasl" in writer.lines

    await _feed(reader, ":server CAP * ACK :sasl")
    assert "AUTHENTICATE PLAIN" in writer.lines
    await _feed(reader, "AUTHENTICATE +")
    auth_lines = [line for line in writer.lines if line.startswith("AUTHENTICATE ") and line != "AUTHENTICATE PLAIN"]
    assert len(auth_lines) == 1

    await _feed(reader, ":server 903 bot :SASL authentication successful")
    assert "CAP END" in writer.lines
    assert session.state == SessionState.REGISTERING

    await _feed(reader, ":server 001 bot :Welcome")
    await asyncio.wait_for(session.wait_ready(), 1.0)
    assert writer.lines.count("CAP END") == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("numeric", ["904", "905", "906", "907", "908"])
async def test_sasl_failure_is_fatal(numeric):
    session = IrcSession("h", "bot", sasl_username="acct", sasl_password="bad")
    reader, writer = _attach(session)
    await _feed(reader, ":server CAP * LS :sasl", ":server CAP * ACK :sasl", "AUTHENTICATE +")
    await _feed(reader, f":server {numeric} bot :SASL authentication failed")
    with pytest.raises(ProtocolError, match="SASL"):
        await asyncio.wait_for(session.wait_ready(), 1.0)
    await asyncio.wait_for(session.wait_closed(), 1.0)
    assert session.state == SessionState.CLOSED


@pytest.mark.asyncio
async def test_missing_sasl_capability_is_fatal():
    session = IrcSession("h", "bot", sasl_enabled=True, sasl_password="pw")
    reader, _ = _attach(session)
    await _feed(reader, ":server CAP * LS :multi-prefix")
    with pytest.raises(ProtocolError):
        await asyncio.wait_for(session.wait_ready(), 1.0)


@pytest.mark.asyncio
async def test_nick_collision_picks_new_nick():
    session = IrcSession("h", "bot", rng=random.Random(1))
    reader, writer = _attach(session)
    await _feed(reader, ":server 433 * bot :Nickname is already in use")
    nick_lines = [line for line in writer.lines if line.startswith("NICK ")]
    assert len(nick_lines) == 2
    new_nick = nick_lines[-1].split(" ", 1)[1]
    assert new_nick.startswith("bot_")
    assert new_nick != "bot"
    assert 0 <= int(new_nick.split("_", 1)[1]) <= 999
    assert session.nick == new_nick
    assert session.state == SessionState.REGISTERING


@pytest.mark.asyncio
async def test_nick_collision_limit():
    session = IrcSession("h", "bot", max_nick_retries=1)
    reader, _ = _attach(session)
    await _feed(reader, ":server 433 * bot :in use", ":server 433 * bot_1 :in use")
    with pytest.raises(ProtocolError, match="nick"):
        await asyncio.wait_for(session.wait_ready(), 1.0)


@pytest.mark.asyncio
async def test_error_before_ready_rejects_readiness():
    session = IrcSession("h", "bot")
    reader, _ = _attach(session)
    await _feed(reader, "ERROR :Closing Link: banned")
    with pytest.raises(ProtocolError, match="banned"):
        await asyncio.wait_for(session.wait_ready(), 1.0)


@pytest.mark.asyncio
async def test_close_before_ready_rejects_readiness():
    session = IrcSession("h", "bot")
    reader, _ = _attach(session)
    reader.feed_eof()
    with pytest.raises(ProtocolError):
        await asyncio.wait_for(session.wait_ready(), 1.0)
    await asyncio.wait_for(session.wait_closed(), 1.0)


@pytest.mark.asyncio
async def test_privmsg_routing_only_when_ready():
    received: list[AddressedMessage] = []
    session = IrcSession("h", "bot", channels=["#chan"], on_message=received.append)
    reader, _ = _attach(session)
    await _feed(reader, ":alice!a@h PRIVMSG bot :too early")
    assert received == []

    await _feed(
        reader,
        ":server 001 bot :Welcome",
        ":alice!a@h PRIVMSG bot :hi there",
        ":bob!b@h PRIVMSG #chan :bot: what's up",
        ":carol!c@h PRIVMSG #chan :unrelated chatter",
        ":dave!d@h PRIVMSG #chan :robot talk",
        ":bot!x@h PRIVMSG #chan :bot: self",
    )
    assert len(received) == 2
    dm, mention = received
    assert dm.is_direct and dm.text == "hi there"
    assert dm.reply_target == "alice"
    assert dm.conversation_key == "irc:dm:alice"
    assert not mention.is_direct and mention.text == "what's up"
    assert mention.reply_target == "#chan"
    assert mention.conversation_key == "irc:channel:#chan"


@pytest.mark.asyncio
async def test_nick_change_tracked():
    session = IrcSession("h", "bot")
    reader, _ = _attach(session)
    await _feed(reader, ":server 001 bot :Welcome", ":bot!u@h NICK :newbot")
    assert session.nick == "newbot"


@pytest.mark.asyncio
async def test_send_message_chunks_long_text():
    session = IrcSession("h", "bot", max_message_bytes=20)
    _, writer = _attach(session)
    writer.lines.clear()
    await session.send_message("#chan", "one two three four five six seven")
    assert all(line.startswith("PRIVMSG #chan :") for line in writer.lines)
    assert len(writer.lines) > 1
    bodies = [line.split(" :", 1)[1] for line in writer.lines]
    assert all(len(b.encode("utf-8")) <= 20 for b in bodies)
    writer.lines.clear()
    await session.send_message("#chan", "   ")
    assert writer.lines == []


@pytest.mark.asyncio
async def test_send_message_strips_line_breaks():
    session = IrcSession("h", "bot")
    _, writer = _attach(session)
    writer.lines.clear()
    await session.send_message("alice", "line one\r\nQUIT :bye")
    assert writer.lines == ["PRIVMSG alice :line one  QUIT :bye"]


@pytest.mark.asyncio
async def test_unexpected_close_after_ready_raises_connection_lost():
    session = IrcSession("h", "bot")
    reader, _ = _attach(session)
    await _feed(reader, ":server 001 bot :Welcome")
    await session.wait_ready()
    reader.feed_eof()
    with pytest.raises(ConnectionLostError):
        await asyncio.wait_for(session.wait_closed(), 1.0)


@pytest.mark.asyncio
async def test_stop_sends_quit_and_closes_cleanly():
    session = IrcSession("h", "bot", shutdown_grace=0.5)
    reader, writer = _attach(session)
    await _feed(reader, ":server 001 bot :Welcome")
    await session.stop("bye")
    assert "QUIT :bye" in writer.lines
    assert session.state == SessionState.CLOSED
    await asyncio.wait_for(session.wait_closed(), 1.0)
    # idempotent
    await session.stop()
    assert writer.lines.count("QUIT :bye") == 1


@pytest.mark.asyncio
async def test_stop_aborts_after_grace_period():
    session = IrcSession("h", "bot", shutdown_grace=0.05)
    reader, writer = _attach(session)
    writer.can_write_eof = lambda: False
    await _feed(reader, ":server 001 bot :Welcome")
    await session.stop()
    writer.transport.abort.assert_called_once()
    assert session.state == SessionState.CLOSED
