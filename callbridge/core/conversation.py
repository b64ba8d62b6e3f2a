"""Bounded, insertion-ordered conversation history for display."""

from __future__ import annotations

from collections import deque
from typing import Deque, Iterator, Tuple

from .models import ConversationTurn, TurnRole


class ConversationHistory:
    """Keeps the most recent ``limit`` turns in the order they were produced.

    Nothing in the orchestration logic reads this back; it exists for the
    presentation layer.
    """

    def __init__(self, limit: int = 6):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit
        self._turns: Deque[ConversationTurn] = deque(maxlen=limit)

    def append(self, role: TurnRole, text: str) -> ConversationTurn:
        turn = ConversationTurn(role=role, text=text)
        self._turns.append(turn)
        return turn

    def clear(self) -> None:
        self._turns.clear()

    def snapshot(self) -> Tuple[ConversationTurn, ...]:
        return tuple(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(tuple(self._turns))
