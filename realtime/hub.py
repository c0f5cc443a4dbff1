"""Broadcast hub: the one place events leave the server.

Every other component publishes through a hub instance handed to it at
construction. Emission is fire-and-forget: no acknowledgement, no retry, and a
target that is gone simply misses the event.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from realtime.sessions import SessionRegistry
from realtime.state import EVT_PRESENCE_COUNT, EVT_PRESENCE_LIST, GLOBAL_ROOM


class BroadcastHub:
    def __init__(self, socketio, registry: SessionRegistry, namespace: str = "/"):
        self._socketio = socketio
        self._registry = registry
        self._namespace = namespace
        self._memberships: dict[str, set[str]] = {}
        self._sequences: dict[str, int] = {}
        self._presence_sources: list[Callable[[], list[dict]]] = []
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Room membership
    # ------------------------------------------------------------------
    def join(self, identity_id: str, room: str = GLOBAL_ROOM) -> None:
        with self._lock:
            self._memberships.setdefault(identity_id, set()).add(room)
        sid = self._registry.sid_for(identity_id)
        if sid:
            self._socketio.server.enter_room(sid, room, namespace=self._namespace)

    def leave(self, identity_id: str, room: str) -> None:
        with self._lock:
            rooms = self._memberships.get(identity_id)
            if rooms is not None:
                rooms.discard(room)
                if not rooms:
                    del self._memberships[identity_id]
        sid = self._registry.sid_for(identity_id)
        if sid:
            self._socketio.server.leave_room(sid, room, namespace=self._namespace)

    def rooms_of(self, identity_id: str) -> set[str]:
        with self._lock:
            return set(self._memberships.get(identity_id, ()))

    def members(self, room: str) -> list[str]:
        with self._lock:
            return [i for i, rooms in self._memberships.items() if room in rooms]

    def forget(self, identity_id: str) -> None:
        # The transport drops the socket from its rooms on disconnect.
        with self._lock:
            self._memberships.pop(identity_id, None)

    def next_sequence(self, room: str) -> int:
        """Monotonic per-room counter stamped on broadcast messages."""
        with self._lock:
            n = self._sequences.get(room, 0) + 1
            self._sequences[room] = n
            return n

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------
    def _emit(self, event: str, payload: Any, to: str | None = None) -> None:
        try:
            if to is None:
                self._socketio.emit(event, payload, namespace=self._namespace)
            else:
                self._socketio.emit(event, payload, to=to, namespace=self._namespace)
        except Exception as exc:
            logging.warning("emit %s to %s failed: %s", event, to or "<all>", exc)

    def emit_to_room(self, room: str, event: str, payload: Any) -> None:
        self._emit(event, payload, to=room)

    def emit_to_sid(self, sid: str, event: str, payload: Any) -> None:
        self._emit(event, payload, to=sid)

    def emit_to_identity(self, identity_id: str, event: str, payload: Any) -> bool:
        """Emit to the identity's live session. Returns False if it has none."""
        sid = self._registry.sid_for(identity_id)
        if not sid:
            return False
        self._emit(event, payload, to=sid)
        return True

    def emit_to_all(self, event: str, payload: Any) -> None:
        self._emit(event, payload)

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------
    def add_presence_source(self, source: Callable[[], list[dict]]) -> None:
        """Register extra participants (e.g. synthetic identities) for presence."""
        self._presence_sources.append(source)

    def snapshot_presence(self) -> dict:
        users = [s.public() for s in self._registry.list_active()]
        seen = {u["identityId"] for u in users}
        for source in self._presence_sources:
            for entry in source():
                if entry.get("identityId") in seen:
                    continue
                seen.add(entry.get("identityId"))
                users.append(entry)
        return {"count": len(users), "list": users}

    def broadcast_presence(self, room: str = GLOBAL_ROOM) -> dict:
        snap = self.snapshot_presence()
        self.emit_to_room(room, EVT_PRESENCE_COUNT, {"count": snap["count"]})
        self.emit_to_room(room, EVT_PRESENCE_LIST, {"users": snap["list"]})
        return snap

    def send_presence(self, sid: str) -> dict:
        snap = self.snapshot_presence()
        self.emit_to_sid(sid, EVT_PRESENCE_COUNT, {"count": snap["count"]})
        self.emit_to_sid(sid, EVT_PRESENCE_LIST, {"users": snap["list"]})
        return snap

    # ------------------------------------------------------------------
    # Scheduling (delegates to the Socket.IO async mode)
    # ------------------------------------------------------------------
    def start_background_task(self, target: Callable, *args, **kwargs):
        return self._socketio.start_background_task(target, *args, **kwargs)
