"""
Observable state for the presentation layer.

The UI only consumes; nothing flows back into the core from here. Subscribers
receive an immutable PresentationState on every relevant transition.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Tuple

import structlog

from .models import CallState, ConversationTurn

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PresentationState:
    call_state: CallState = CallState.IDLE
    is_connected: bool = False
    last_transcription: str = ""
    conversation_history: Tuple[ConversationTurn, ...] = ()
    call_duration: int = 0
    remote_number: Optional[str] = None
    last_error: Optional[str] = None


Subscriber = Callable[[PresentationState], None]


class StatePublisher:
    def __init__(self) -> None:
        self._state = PresentationState()
        self._subscribers: List[Subscriber] = []

    def snapshot(self) -> PresentationState:
        return self._state

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; it immediately receives the current state."""
        self._subscribers.append(callback)
        self._deliver(callback, self._state)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, **changes) -> PresentationState:
        new_state = replace(self._state, **changes)
        if new_state == self._state:
            return self._state
        self._state = new_state
        for callback in list(self._subscribers):
            self._deliver(callback, new_state)
        return new_state

    @staticmethod
    def _deliver(callback: Subscriber, state: PresentationState) -> None:
        try:
            callback(state)
        except Exception:
            # A broken UI subscriber must not take the call down with it
            logger.warning("Presentation subscriber failed", exc_info=True)
