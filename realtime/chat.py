"""Socket.IO handlers: global chat room.

Handshake authentication, presence, typing, unread counters, mentions, edits,
and the hand-off to the ghost participant pool.
"""

import functools
import logging

from flask import request
from flask_socketio import ConnectionRefusedError

from database import PersistenceError
from realtime.mentions import extract_mentions, resolve_targets
from realtime.state import (
    EVT_ERROR,
    EVT_MENTION,
    EVT_MESSAGE,
    EVT_MESSAGE_EDIT,
    EVT_TYPING_STATUS,
    EVT_UNREAD,
    GLOBAL_ROOM,
)
from security import AuthenticationError, authenticate


class ValidationError(ValueError):
    """Malformed socket payload. Reported in the ack only, never broadcast."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


def _acked(fn):
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ValidationError as e:
            return {"success": False, "error": e.code}

    return wrapper


def _clean_text(value, max_len: int) -> str:
    if not isinstance(value, str):
        raise ValidationError("invalid_text")
    text = value.strip()
    if not text:
        raise ValidationError("empty_text")
    if len(text) > max_len:
        raise ValidationError("text_too_long")
    return text


def _optional_id(value):
    if value is None or value == "":
        return None
    if not isinstance(value, (str, int)):
        raise ValidationError("invalid_id")
    return str(value)


def register(socketio, settings, ctx):
    """Register Socket.IO event handlers for this module."""
    registry = ctx.registry
    typing = ctx.typing
    unread = ctx.unread
    hub = ctx.hub
    pool = ctx.pool
    store = ctx.store
    max_len = int(settings.get("max_message_length", 2000))

    # ── helpers ───────────────────────────────────────────────────────
    def _identity() -> str:
        identity_id = registry.identity_for_sid(request.sid)
        if identity_id is None:
            raise ValidationError("not_connected")
        return identity_id

    def _broadcast_typing() -> None:
        hub.emit_to_room(GLOBAL_ROOM, EVT_TYPING_STATUS, {"typing": typing.active_typists()})

    def _deliver(stored: dict, author_id: str) -> dict:
        """Fan a persisted message out: room broadcast, mentions, unread, ghost context."""
        message = dict(stored)
        message["seq"] = hub.next_sequence(GLOBAL_ROOM)
        hub.emit_to_room(GLOBAL_ROOM, EVT_MESSAGE, message)

        # Snapshot taken after persistence; sessions may have changed meanwhile.
        live = registry.list_active()

        handles = extract_mentions(message.get("text", ""))
        for target in resolve_targets(handles, live, exclude=author_id):
            hub.emit_to_identity(
                target,
                EVT_MENTION,
                {
                    "messageId": message["id"],
                    "from": {"userId": author_id, "nickname": message.get("nickname")},
                    "text": message.get("text"),
                },
            )

        credited = unread.record_delivery(author_id, unread.viewers(), [s.identity_id for s in live])
        for identity_id, count in credited:
            hub.emit_to_identity(identity_id, EVT_UNREAD, {"count": count})

        pool.observe(message)
        return message

    def _ghost_typing(reply, active: bool) -> None:
        if active:
            typing.set_typing(reply.identity_id, reply.nickname)
        else:
            typing.clear_typing(reply.identity_id)
        _broadcast_typing()

    def _ghost_deliver(reply) -> None:
        try:
            stored = store.insert_message(reply.identity_id, reply.text, reply.reply_to_id)
        except PersistenceError as e:
            logging.error("Could not persist ghost message from %s: %s", reply.nickname, e)
            return
        _deliver(stored, author_id=reply.identity_id)

    ctx.deliver = _deliver

    # ── connection lifecycle ──────────────────────────────────────────
    @socketio.on("connect")
    def handle_connect(auth=None):
        token = auth.get("token") if isinstance(auth, dict) else None
        token = token or request.args.get("token")
        try:
            user = authenticate(token, store)
        except AuthenticationError as e:
            logging.info("Socket %s rejected: %s", request.sid, e.code)
            raise ConnectionRefusedError(e.message)
        except PersistenceError as e:
            logging.error("Identity lookup failed during handshake: %s", e)
            raise ConnectionRefusedError("Authentication error")

        identity_id = user["id"]
        sid = request.sid
        previous = registry.admit(identity_id, sid, user["nickname"], user.get("avatarUrl"))
        if previous is not None and previous.sid != sid:
            logging.info("Session for %s replaced (%s -> %s)", user["nickname"], previous.sid, sid)
        logging.info("%s connected (%s)", user["nickname"], sid)

        hub.join(identity_id, GLOBAL_ROOM)
        hub.broadcast_presence()
        hub.emit_to_sid(sid, EVT_TYPING_STATUS, {"typing": typing.active_typists()})
        hub.emit_to_sid(sid, EVT_UNREAD, {"count": unread.count(identity_id)})

    @socketio.on("disconnect")
    def handle_disconnect(*args, **kwargs):
        sid = request.sid
        identity_id = registry.identity_for_sid(sid)
        if identity_id is None:
            logging.debug("Disconnect from untracked sid %s", sid)
            return

        registry.remove(identity_id, sid)
        typing.clear_typing(identity_id)
        unread.forget(identity_id)
        hub.forget(identity_id)
        cancelled = pool.cancel_for_owner(identity_id)
        if cancelled:
            logging.info("Cancelled %d pending ghost repl%s for %s", cancelled, "y" if cancelled == 1 else "ies", identity_id)

        hub.broadcast_presence()
        _broadcast_typing()
        logging.info("%s disconnected (%s)", identity_id, sid)

    # ── chat surface visibility ───────────────────────────────────────
    @socketio.on("chat:join")
    @_acked
    def handle_join(data=None):
        identity_id = _identity()
        count = unread.mark_viewing(identity_id)
        hub.emit_to_sid(request.sid, EVT_UNREAD, {"count": count})
        return {"success": True}

    @socketio.on("chat:mark_read")
    @_acked
    def handle_mark_read(data=None):
        identity_id = _identity()
        count = unread.mark_viewing(identity_id)
        hub.emit_to_sid(request.sid, EVT_UNREAD, {"count": count})
        return {"success": True}

    @socketio.on("chat:leave")
    @_acked
    def handle_leave(data=None):
        unread.mark_away(_identity())
        return {"success": True}

    # ── messages ──────────────────────────────────────────────────────
    @socketio.on("chat:send")
    @_acked
    def handle_send(data=None):
        identity_id = _identity()
        if not isinstance(data, dict):
            raise ValidationError("invalid_payload")
        text = _clean_text(data.get("text"), max_len)
        reply_to_id = _optional_id(data.get("replyToId"))

        try:
            stored = store.insert_message(identity_id, text, reply_to_id)
        except PersistenceError as e:
            logging.error("Message from %s not saved: %s", identity_id, e)
            hub.emit_to_sid(request.sid, EVT_ERROR, {"code": "send_failed", "message": "Message could not be sent"})
            return {"success": False, "error": "send_failed"}

        message = _deliver(stored, author_id=identity_id)

        if typing.clear_typing(identity_id):
            _broadcast_typing()

        pool.offer(identity_id, _ghost_typing, _ghost_deliver)
        return {"success": True, "message": message}

    @socketio.on("chat:edit")
    @_acked
    def handle_edit(data=None):
        identity_id = _identity()
        if not isinstance(data, dict):
            raise ValidationError("invalid_payload")
        message_id = _optional_id(data.get("id"))
        if message_id is None:
            raise ValidationError("missing_id")
        text = _clean_text(data.get("text"), max_len)

        try:
            updated = store.update_message_text(message_id, identity_id, text)
        except PersistenceError as e:
            logging.error("Edit of %s by %s not saved: %s", message_id, identity_id, e)
            return {"success": False, "error": "edit_failed"}

        if updated is None:
            return {"success": False, "error": "not_author"}

        payload = {"id": updated["id"], "text": updated["text"], "editedAt": updated.get("editedAt")}
        hub.emit_to_room(GLOBAL_ROOM, EVT_MESSAGE_EDIT, payload)
        return {"success": True, "message": payload}

    # ── typing ────────────────────────────────────────────────────────
    @socketio.on("chat:typing")
    @_acked
    def handle_typing(data=None):
        identity_id = _identity()
        session = registry.get(identity_id)
        typing.set_typing(identity_id, session.nickname if session else identity_id)
        _broadcast_typing()
        return {"success": True}

    @socketio.on("chat:stop_typing")
    @_acked
    def handle_stop_typing(data=None):
        typing.clear_typing(_identity())
        _broadcast_typing()
        return {"success": True}

    # ── presence ──────────────────────────────────────────────────────
    @socketio.on("presence:get")
    @_acked
    def handle_presence_get(data=None):
        _identity()
        snap = hub.send_presence(request.sid)
        return {"success": True, "count": snap["count"]}
