#!/usr/bin/env python3
"""
socket_handlers.py

Builds the in-memory chat coordinator (sessions, typing, unread, broadcast hub,
ghost participant pool) and registers the Socket.IO handler modules on it.
"""

import random
import time
from types import SimpleNamespace

from realtime.ai_pool import AIParticipantPool
from realtime.hub import BroadcastHub
from realtime.sessions import SessionRegistry
from realtime.state import TYPING_TIMEOUT_SECONDS
from realtime.typing_status import TypingTracker
from realtime.unread import UnreadLedger


def build_coordinator(socketio, settings, store, generator, *, clock=time.monotonic, rng=None) -> SimpleNamespace:
    """Wire the coordinator components together. Each gets its collaborators explicitly."""
    registry = SessionRegistry()
    hub = BroadcastHub(socketio, registry)
    typing = TypingTracker(
        timeout=float(settings.get("typing_timeout_seconds", TYPING_TIMEOUT_SECONDS)),
        clock=clock,
    )
    unread = UnreadLedger()

    if not settings.get("ai_enabled", True):
        generator = None
    pool = AIParticipantPool.from_settings(
        store,
        generator,
        hub,
        settings,
        clock=clock,
        rng=rng or random.Random(),
    )
    hub.add_presence_source(pool.active_profiles)

    return SimpleNamespace(
        registry=registry,
        hub=hub,
        typing=typing,
        unread=unread,
        pool=pool,
        store=store,
    )


def register_socketio_handlers(socketio, settings, store, generator, **kwargs) -> SimpleNamespace:
    """
    Registers all Socket.IO event handlers and returns the coordinator they share.
    """
    ctx = build_coordinator(socketio, settings, store, generator, **kwargs)

    from realtime import chat
    chat.register(socketio, settings, ctx)
    return ctx
