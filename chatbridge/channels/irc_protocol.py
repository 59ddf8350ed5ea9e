"""IRC wire helpers: line tokenizer, SASL PLAIN chunks, capability lists, chunking, addressing.

Line grammar (RFC 1459 with IRCv3 message tags)::

    [@tags SPACE] [:prefix SPACE] command {SPACE param} [SPACE :trailing]

Tags are discarded. The trailing parameter keeps its embedded spaces verbatim.
"""

from __future__ import annotations

import base64
import re
from dataclasses import dataclass

SASL_CHUNK_SIZE = 400
DEFAULT_MAX_MESSAGE_BYTES = 380


@dataclass(frozen=True)
class ParsedLine:
    """One inbound protocol line."""

    raw: str
    prefix: str | None
    command: str
    params: tuple[str, ...]

    def param(self, index: int, default: str = "") -> str:
        if -len(self.params) <= index < len(self.params):
            return self.params[index]
        return default

    @property
    def nick(self) -> str:
        return extract_nick(self.prefix or "")


def parse_line(raw: str) -> ParsedLine | None:
    """Tokenize one line (without CRLF). Returns None for empty or truncated lines."""
    if not raw:
        return None
    line = raw
    if line.startswith("@"):
        tag_end = line.find(" ")
        if tag_end == -1:
            return None
        line = line[tag_end + 1 :].lstrip(" ")

    prefix = None
    if line.startswith(":"):
        prefix_end = line.find(" ")
        if prefix_end == -1:
            return None
        prefix = line[1:prefix_end]
        line = line[prefix_end + 1 :].lstrip(" ")

    space = line.find(" ")
    command = (line if space == -1 else line[:space]).upper()
    if not command:
        return None
    rest = "" if space == -1 else line[space + 1 :]

    params: list[str] = []
    while rest:
        if rest.startswith(":"):
            params.append(rest[1:])
            break
        space = rest.find(" ")
        if space == -1:
            params.append(rest)
            break
        params.append(rest[:space])
        rest = rest[space + 1 :].lstrip(" ")
    return ParsedLine(raw=raw, prefix=prefix, command=command, params=tuple(params))


def extract_nick(prefix: str) -> str:
    """`nick!user@host` -> `nick`."""
    return prefix.split("!", 1)[0] if prefix else ""


def build_sasl_plain_chunks(username: str, password: str, chunk_size: int = SASL_CHUNK_SIZE) -> list[str]:
    """AUTHENTICATE arguments for SASL PLAIN: base64(NUL user NUL password) in chunk_size pieces.

    A final bare ``+`` is appended when the payload is empty or exactly fills the last chunk,
    so the server can tell the exchange is complete.
    """
    payload = base64.b64encode(f"\0{username}\0{password}".encode("utf-8")).decode("ascii")
    chunks = [payload[i : i + chunk_size] for i in range(0, len(payload), chunk_size)]
    if not chunks or len(payload) % chunk_size == 0:
        chunks.append("+")
    return chunks


def has_capability(capability_list: str, target: str) -> bool:
    """True if `target` appears in a CAP list (modifiers and `=value` suffixes ignored)."""
    wanted = target.lower()
    for item in capability_list.lower().split():
        name = item.lstrip("-=~").split("=", 1)[0]
        if name == wanted:
            return True
    return False


def split_message(text: str, limit: int = DEFAULT_MAX_MESSAGE_BYTES) -> list[str]:
    """Split a reply into lines of at most `limit` UTF-8 bytes.

    Splits at the last whitespace at or before the limit, otherwise hard-splits on a character
    boundary. Chunks are trimmed; blank text yields no chunks.
    """
    chunks: list[str] = []
    remaining = text.strip()
    while len(remaining.encode("utf-8")) > limit:
        encoded = remaining.encode("utf-8")
        cut = limit
        while cut > 0 and (encoded[cut] & 0xC0) == 0x80:
            cut -= 1
        head = encoded[:cut].decode("utf-8") if cut > 0 else remaining[0]
        split_at = 0
        for i in range(len(head), 0, -1):
            if remaining[i].isspace():
                split_at = i
                break
        if split_at <= 0:
            split_at = len(head)
        chunks.append(remaining[:split_at].strip())
        remaining = remaining[split_at:].lstrip()
    if remaining:
        chunks.append(remaining)
    return chunks


def _mention_pattern(nick: str) -> re.Pattern[str]:
    return re.compile(rf"(?:^|\s)@?{re.escape(nick)}(?=[:,\s]|$)", re.IGNORECASE)


def is_mentioning(text: str, nick: str) -> bool:
    """True if `nick` appears as a whole token, optionally `@`-prefixed, case-insensitively."""
    if not text or not nick:
        return False
    return _mention_pattern(nick).search(text) is not None


def strip_mention(text: str, nick: str) -> str:
    """Remove a leading `nick:` / `@nick,` / `nick` token and trim."""
    if not text or not nick:
        return (text or "").strip()
    pattern = re.compile(rf"^\s*@?{re.escape(nick)}(?=[:,\s]|$)[,:]?\s*", re.IGNORECASE)
    return pattern.sub("", text, count=1).strip()


def sanitize_line(text: str) -> str:
    """Outbound text must not smuggle extra protocol lines."""
    return text.replace("\r", " ").replace("\n", " ")
