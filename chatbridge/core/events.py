"""Conversation and stream event payloads. All events are Pydantic models."""

from __future__ import annotations

from enum import Enum
from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class ChannelKind(str, Enum):
    """Supported transports. Each service entry in the config names one of these."""

    SLACK = "slack"
    DISCORD = "discord"
    IRC = "irc"
    CLI = "cli"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Turn(BaseModel):
    """One dialogue turn sent to the completion endpoint."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    role: Role
    content: str

    def as_input(self) -> dict[str, str]:
        return {"role": str(self.role), "content": self.content}


class TextDelta(BaseModel):
    """A newly arrived fragment plus the full text accumulated so far."""

    kind: Literal["delta"] = "delta"
    delta: str
    text: str = Field(description="All delta text received up to and including this fragment")


class StreamCompleted(BaseModel):
    """Terminal event: definitive answer (trimmed deltas, else fallback payload text)."""

    kind: Literal["completed"] = "completed"
    text: str = ""


StreamEvent = Union[TextDelta, StreamCompleted]
