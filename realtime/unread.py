"""Per-identity unread counters for the chat surface.

Counts are private: callers push each updated count to its owner only.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable


class UnreadLedger:
    def __init__(self):
        self._counts: dict[str, int] = {}
        self._viewing: set[str] = set()
        self._lock = threading.Lock()

    def mark_viewing(self, identity_id: str) -> int:
        """Identity is looking at the chat; its counter resets to 0."""
        with self._lock:
            self._viewing.add(identity_id)
            self._counts[identity_id] = 0
        return 0

    def mark_away(self, identity_id: str) -> None:
        with self._lock:
            self._viewing.discard(identity_id)

    def is_viewing(self, identity_id: str) -> bool:
        with self._lock:
            return identity_id in self._viewing

    def viewers(self) -> set[str]:
        with self._lock:
            return set(self._viewing)

    def count(self, identity_id: str) -> int:
        with self._lock:
            return self._counts.get(identity_id, 0)

    def record_delivery(
        self,
        author_id: str,
        active_viewers: Iterable[str],
        all_identity_ids: Iterable[str],
    ) -> list[tuple[str, int]]:
        """Credit one unread message to everyone who missed it.

        Returns (identity_id, new_count) pairs in the order of all_identity_ids.
        The author and current viewers are never credited.
        """
        viewers = set(active_viewers)
        updated: list[tuple[str, int]] = []
        seen: set[str] = set()
        with self._lock:
            for identity_id in all_identity_ids:
                if identity_id == author_id or identity_id in viewers or identity_id in seen:
                    continue
                seen.add(identity_id)
                n = self._counts.get(identity_id, 0) + 1
                self._counts[identity_id] = n
                updated.append((identity_id, n))
        return updated

    def forget(self, identity_id: str) -> None:
        with self._lock:
            self._viewing.discard(identity_id)
            self._counts.pop(identity_id, None)
