"""
MicOwnership - the single capture/playback token for one call.

Capture and AI playback share the in-call audio path. Exactly one of them may
own it at a time: while playback owns it no chunk boundary is processed, no
new capture buffer is opened and captured frames are discarded, which keeps
the assistant's own voice (and the caller talking over it) out of the next
chunk.

Only the orchestrator mutates the token. Turn processors ask for changes
through the orchestrator's host callbacks.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, List, Tuple

import structlog

logger = structlog.get_logger(__name__)


class MicOwner(str, Enum):
    NONE = "none"
    CAPTURE = "capture"
    PLAYBACK = "playback"


@dataclass
class MicOwnership:
    """Mutually exclusive owner of the call's audio path.

    Attributes:
        owner: Current owner
        trace: Bounded history of (timestamp, previous, new) transitions
        denied: Number of refused acquisitions (e.g. a second playback)
    """
    owner: MicOwner = MicOwner.NONE
    trace: Deque[Tuple[float, MicOwner, MicOwner]] = field(default_factory=lambda: deque(maxlen=256))
    denied: int = 0

    @property
    def capturing(self) -> bool:
        return self.owner is MicOwner.CAPTURE

    @property
    def playing(self) -> bool:
        return self.owner is MicOwner.PLAYBACK

    def acquire_capture(self) -> bool:
        """Hand the path to capture. Refused while playback holds it."""
        if self.owner is MicOwner.PLAYBACK:
            self.denied += 1
            return False
        self._set(MicOwner.CAPTURE)
        return True

    def acquire_playback(self) -> bool:
        """Hand the path to playback. Refused if a playback is already in flight."""
        if self.owner is MicOwner.PLAYBACK:
            self.denied += 1
            return False
        self._set(MicOwner.PLAYBACK)
        return True

    def release_playback(self) -> bool:
        """Return the path from playback to capture."""
        if self.owner is not MicOwner.PLAYBACK:
            return False
        self._set(MicOwner.CAPTURE)
        return True

    def release(self) -> None:
        """Unconditional release, used on teardown and device failure."""
        self._set(MicOwner.NONE)

    def transitions(self) -> List[Tuple[MicOwner, MicOwner]]:
        return [(prev, new) for _, prev, new in self.trace]

    def _set(self, owner: MicOwner) -> None:
        previous = self.owner
        if previous is owner:
            return
        self.owner = owner
        self.trace.append((time.monotonic(), previous, owner))
        logger.debug("Mic ownership changed", previous=previous.value, owner=owner.value)
