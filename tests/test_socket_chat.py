from conftest import received


def _names(events):
    return [e["name"] for e in events]


# ── handshake ─────────────────────────────────────────────────────────
def test_missing_or_bad_token_is_rejected_before_admission(app, socketio, realtime, token_for) -> None:
    no_token = socketio.test_client(app)
    bad_token = socketio.test_client(app, auth={"token": "not-a-jwt"})
    unknown = socketio.test_client(app, auth={"token": token_for({"id": "no-such-user"})})

    assert not no_token.is_connected()
    assert not bad_token.is_connected()
    assert not unknown.is_connected()
    assert len(realtime.registry) == 0


def test_connect_admits_and_sends_presence_typing_and_unread(connect, realtime) -> None:
    ana, client = connect("ana")

    assert client.is_connected()
    assert realtime.registry.is_active(ana["id"])
    events = received(client)
    names = _names(events)
    assert "presence:count" in names
    assert "presence:list" in names
    assert "chat:typing_status" in names
    unread = [e["args"][0] for e in events if e["name"] == "chat:unread"]
    assert unread == [{"count": 0}]
    users = [e["args"][0] for e in events if e["name"] == "presence:list"][-1]["users"]
    assert [u["nickname"] for u in users] == ["ana"]


def test_second_connection_replaces_registry_entry(connect, realtime, socketio, app, token_for) -> None:
    ana, first = connect("ana")
    second = socketio.test_client(app, auth={"token": token_for(ana)})
    try:
        assert first.is_connected() and second.is_connected()
        assert len(realtime.registry) == 1

        # The stale socket going away must not drop the live one.
        first.disconnect()
        assert realtime.registry.is_active(ana["id"])
    finally:
        second.disconnect()


# ── messages, mentions, unread ────────────────────────────────────────
def test_mention_reaches_only_the_mentioned_identity(connect) -> None:
    _, a = connect("ana")
    _, b = connect("Maria")
    _, c = connect("carlos")
    for client in (a, b, c):
        received(client)

    ack = a.emit("chat:send", {"text": "oi @maria"}, callback=True)

    assert ack["success"] is True
    message_id = ack["message"]["id"]
    mentions_b = received(b, "chat:mention")
    assert len(mentions_b) == 1
    assert mentions_b[0]["messageId"] == message_id
    assert received(c, "chat:mention") == []
    assert received(a, "chat:mention") == []


def test_mention_of_issued_anonymous_nickname_is_delivered(connect, store) -> None:
    _, a = connect(None, user=store.create_anonymous_user())
    b_user, b = connect(None, user=store.create_anonymous_user())
    _, c = connect("carlos")
    for client in (a, b, c):
        received(client)

    ack = a.emit("chat:send", {"text": f"oi @{b_user['nickname']}"}, callback=True)

    mentions_b = received(b, "chat:mention")
    assert len(mentions_b) == 1
    assert mentions_b[0]["messageId"] == ack["message"]["id"]
    assert received(c, "chat:mention") == []
    # The author shares the "anonimo" handle but never mentions themselves.
    assert received(a, "chat:mention") == []


def test_send_broadcasts_message_with_sequence(connect) -> None:
    ana, a = connect("ana")
    _, b = connect("bia")
    received(a), received(b)

    a.emit("chat:send", {"text": "primeira"}, callback=True)
    a.emit("chat:send", {"text": "segunda"}, callback=True)

    msgs = received(b, "chat:message")
    assert [m["text"] for m in msgs] == ["primeira", "segunda"]
    assert msgs[1]["seq"] == msgs[0]["seq"] + 1
    assert msgs[0]["userId"] == ana["id"]
    assert msgs[0]["nickname"] == "ana"


def test_unread_counts_are_private_and_reset_on_mark_read(connect) -> None:
    _, a = connect("ana")
    _, b = connect("bia")
    _, c = connect("carlos")
    a.emit("chat:join", callback=True)
    for client in (a, b, c):
        received(client)

    c.emit("chat:send", {"text": "alguém aí?"}, callback=True)
    c.emit("chat:send", {"text": "olá?"}, callback=True)

    assert received(a, "chat:unread") == []
    assert received(b, "chat:unread") == [{"count": 1}, {"count": 2}]
    assert received(c, "chat:unread") == []

    ack = b.emit("chat:mark_read", callback=True)
    assert ack == {"success": True}
    assert received(b, "chat:unread") == [{"count": 0}]

    b.emit("chat:leave", callback=True)
    c.emit("chat:send", {"text": "de novo"}, callback=True)
    assert received(b, "chat:unread") == [{"count": 1}]


def test_invalid_payloads_are_acked_and_not_broadcast(connect, store) -> None:
    _, a = connect("ana")
    _, b = connect("bia")
    received(a), received(b)

    assert a.emit("chat:send", {"text": "   "}, callback=True) == {"success": False, "error": "empty_text"}
    assert a.emit("chat:send", {"text": 42}, callback=True) == {"success": False, "error": "invalid_text"}
    assert a.emit("chat:send", "oi", callback=True) == {"success": False, "error": "invalid_payload"}
    assert a.emit("chat:send", {"text": "x" * 2001}, callback=True) == {"success": False, "error": "text_too_long"}

    assert store.messages == []
    assert received(b, "chat:message") == []


def test_persistence_failure_reports_to_sender_only(connect, store) -> None:
    _, a = connect("ana")
    _, b = connect("bia")
    received(a), received(b)
    store.fail_writes = True

    ack = a.emit("chat:send", {"text": "vai falhar"}, callback=True)

    assert ack == {"success": False, "error": "send_failed"}
    errors = received(a, "chat:error")
    assert len(errors) == 1 and errors[0]["code"] == "send_failed"
    assert received(b) == []


def test_reply_to_is_carried_on_the_message(connect) -> None:
    _, a = connect("ana")
    first = a.emit("chat:send", {"text": "pergunta"}, callback=True)["message"]

    ack = a.emit("chat:send", {"text": "resposta", "replyToId": first["id"]}, callback=True)

    assert ack["message"]["replyToId"] == first["id"]


# ── edits ─────────────────────────────────────────────────────────────
def test_author_edit_broadcasts_edit_event(connect, store) -> None:
    _, a = connect("ana")
    _, b = connect("bia")
    sent = a.emit("chat:send", {"text": "original"}, callback=True)["message"]
    received(a), received(b)

    ack = a.emit("chat:edit", {"id": sent["id"], "text": "editado"}, callback=True)

    assert ack["success"] is True
    edits = received(b, "chat:message_edit")
    assert len(edits) == 1
    assert edits[0]["id"] == sent["id"]
    assert edits[0]["text"] == "editado"
    assert edits[0]["editedAt"]
    assert received(b, "chat:message") == []


def test_non_author_edit_changes_nothing(connect, store) -> None:
    _, a = connect("ana")
    _, b = connect("bia")
    sent = a.emit("chat:send", {"text": "original"}, callback=True)["message"]
    received(a), received(b)

    ack = b.emit("chat:edit", {"id": sent["id"], "text": "hackeado"}, callback=True)

    assert ack == {"success": False, "error": "not_author"}
    assert store.get_message(sent["id"])["text"] == "original"
    assert received(a, "chat:message_edit") == []
    assert received(b, "chat:message_edit") == []


# ── typing + presence ─────────────────────────────────────────────────
def test_typing_status_broadcast_and_cleared_by_send(connect) -> None:
    _, a = connect("ana")
    _, b = connect("bia")
    received(a), received(b)

    a.emit("chat:typing", callback=True)
    assert received(b, "chat:typing_status") == [{"typing": ["ana"]}]

    a.emit("chat:send", {"text": "pronto"}, callback=True)
    assert received(b, "chat:typing_status") == [{"typing": []}]

    a.emit("chat:typing", callback=True)
    a.emit("chat:stop_typing", callback=True)
    assert received(b, "chat:typing_status")[-1] == {"typing": []}


def test_disconnect_removes_from_presence_and_typing(connect, realtime) -> None:
    _, a = connect("ana")
    bia, b = connect("bia")
    b.emit("chat:typing", callback=True)
    received(a)

    b.disconnect()

    events = received(a)
    counts = [e["args"][0] for e in events if e["name"] == "presence:count"]
    lists = [e["args"][0] for e in events if e["name"] == "presence:list"]
    typing = [e["args"][0] for e in events if e["name"] == "chat:typing_status"]
    assert counts[-1] == {"count": 1}
    assert [u["nickname"] for u in lists[-1]["users"]] == ["ana"]
    assert typing[-1] == {"typing": []}
    assert not realtime.registry.is_active(bia["id"])
    assert bia["id"] not in realtime.typing


def test_presence_get_answers_only_the_requester(connect) -> None:
    _, a = connect("ana")
    _, b = connect("bia")
    received(a), received(b)

    ack = a.emit("presence:get", callback=True)

    assert ack == {"success": True, "count": 2}
    assert received(a, "presence:count") == [{"count": 2}]
    assert received(b) == []
