"""Session registry: who is online right now.

One entry per identity. A later handshake for the same identity overwrites the
earlier one (last writer wins); the stale socket stays open on the transport
but is no longer tracked here.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass


@dataclass
class Session:
    identity_id: str
    sid: str
    nickname: str
    avatar_url: str | None = None

    def public(self) -> dict:
        return {
            "identityId": self.identity_id,
            "nickname": self.nickname,
            "avatarUrl": self.avatar_url,
            "isAI": False,
        }


class SessionRegistry:
    def __init__(self):
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def admit(self, identity_id: str, sid: str, nickname: str, avatar_url: str | None = None) -> Session | None:
        """Record the session for identity_id. Returns the session it replaced, if any."""
        session = Session(identity_id=identity_id, sid=sid, nickname=nickname, avatar_url=avatar_url)
        with self._lock:
            previous = self._sessions.pop(identity_id, None)
            self._sessions[identity_id] = session
        return previous

    def remove(self, identity_id: str, sid: str | None = None) -> bool:
        """Drop the session for identity_id.

        When ``sid`` is given the entry is only removed if it still belongs to
        that socket, so a stale duplicate disconnecting cannot evict the live
        session that replaced it.
        """
        with self._lock:
            current = self._sessions.get(identity_id)
            if current is None:
                return False
            if sid is not None and current.sid != sid:
                return False
            del self._sessions[identity_id]
            return True

    def get(self, identity_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(identity_id)

    def sid_for(self, identity_id: str) -> str | None:
        with self._lock:
            session = self._sessions.get(identity_id)
            return session.sid if session else None

    def identity_for_sid(self, sid: str) -> str | None:
        with self._lock:
            for identity_id, session in self._sessions.items():
                if session.sid == sid:
                    return identity_id
        return None

    def is_active(self, identity_id: str) -> bool:
        with self._lock:
            return identity_id in self._sessions

    def list_active(self) -> list[Session]:
        """Snapshot of all sessions in insertion order."""
        with self._lock:
            return list(self._sessions.values())

    def identity_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
