"""Typing indicators with lazy expiry.

There is no timer per entry: every call to active_typists() drops entries whose
last signal is older than the timeout, so reads double as garbage collection.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from realtime.state import TYPING_TIMEOUT_SECONDS


@dataclass
class TypingEntry:
    identity_id: str
    display_name: str
    last_signal: float


class TypingTracker:
    def __init__(self, timeout: float = TYPING_TIMEOUT_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.timeout = float(timeout)
        self._clock = clock
        self._entries: dict[str, TypingEntry] = {}
        self._lock = threading.Lock()

    def set_typing(self, identity_id: str, display_name: str) -> None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(identity_id)
            if entry is None:
                self._entries[identity_id] = TypingEntry(identity_id, display_name, now)
            else:
                # Refresh in place so the typist keeps its position.
                entry.display_name = display_name
                entry.last_signal = now

    def clear_typing(self, identity_id: str) -> bool:
        with self._lock:
            return self._entries.pop(identity_id, None) is not None

    def active_typists(self) -> list[str]:
        now = self._clock()
        with self._lock:
            stale = [k for k, e in self._entries.items() if (now - e.last_signal) > self.timeout]
            for k in stale:
                del self._entries[k]
            return [e.display_name for e in self._entries.values()]

    def __contains__(self, identity_id: str) -> bool:
        with self._lock:
            return identity_id in self._entries
