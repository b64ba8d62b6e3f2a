"""
Telephony state source interface and state normalisation.

The platform telephony stack is external. It reports call state through push
notifications and an on-demand query, both of which can disagree or miss
transitions. Whatever raw form they use, the orchestrator only ever sees the
three-valued TelephonyState produced by ``normalize_telephony_state``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Optional


from callbridge.core.models import TelephonyState


# Android TelephonyManager.CALL_STATE_* integers
_INT_STATES = {
    0: TelephonyState.IDLE,
    1: TelephonyState.RINGING,
    2: TelephonyState.ACTIVE,
}

_NAMED_STATES = {
    "idle": TelephonyState.IDLE,
    "disconnected": TelephonyState.IDLE,
    "terminated": TelephonyState.IDLE,
    "ended": TelephonyState.IDLE,
    "ringing": TelephonyState.RINGING,
    "incoming": TelephonyState.RINGING,
    "active": TelephonyState.ACTIVE,
    "offhook": TelephonyState.ACTIVE,
    "connected": TelephonyState.ACTIVE,
    "holding": TelephonyState.ACTIVE,
    "held": TelephonyState.ACTIVE,
}


def normalize_telephony_state(raw: Any) -> Optional[TelephonyState]:
    """Map a raw platform call state to TelephonyState.

    Returns None for values that cannot be classified. Callers drop those
    instead of treating them as idle, which would tear down a live call.
    """
    if isinstance(raw, TelephonyState):
        return raw
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return _INT_STATES.get(raw)
    if isinstance(raw, str):
        key = raw.strip().lower()
        if key.isdigit():
            return _INT_STATES.get(int(key))
        return _NAMED_STATES.get(key)
    if isinstance(raw, dict):
        # Push payloads look like {"state": 2, "stateStr": "OFFHOOK"}
        for field_name in ("state", "stateStr"):
            if field_name in raw:
                state = normalize_telephony_state(raw[field_name])
                if state is not None:
                    return state
    return None


StateCallback = Callable[[Any, Optional[str]], None]


class TelephonySource(ABC):
    """Platform telephony primitives consumed by the orchestrator."""

    @abstractmethod
    async def get_state(self) -> Any:
        """Query the current raw call state (pollable)."""

    @abstractmethod
    def subscribe(self, callback: StateCallback) -> Callable[[], None]:
        """Register for push notifications ``callback(raw_state, remote_number)``.

        Returns a callable that removes the subscription. The callback may be
        invoked from a platform thread.
        """

    @abstractmethod
    async def answer(self) -> bool:
        """Answer the ringing call. Returns False (or raises) on failure."""
