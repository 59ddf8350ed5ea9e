"""Short-term memory: last N turns per conversation key, held in process memory."""

from __future__ import annotations

import logging
from collections import deque

from chatbridge.core.events import Role, Turn

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 20


class ConversationWindow:
    """Bounded, insertion-ordered turn history per conversation key. Oldest turns are evicted."""

    def __init__(self, window: int = DEFAULT_WINDOW) -> None:
        if window < 1:
            raise ValueError("window must be at least 1")
        self._window = window
        self._turns: dict[str, deque[Turn]] = {}

    @property
    def window(self) -> int:
        return self._window

    def append(self, key: str, role: Role | str, content: str) -> None:
        history = self._turns.setdefault(key, deque(maxlen=self._window))
        history.append(Turn(role=role, content=content))

    def get_turns(self, key: str) -> list[Turn]:
        """Copy of the history, oldest first."""
        return list(self._turns.get(key, ()))

    def clear(self, key: str) -> None:
        self._turns.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._turns)
