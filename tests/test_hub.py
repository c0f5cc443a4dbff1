from types import SimpleNamespace

from realtime.hub import BroadcastHub
from realtime.sessions import SessionRegistry
from realtime.state import EVT_PRESENCE_COUNT, EVT_PRESENCE_LIST, GLOBAL_ROOM


class RecordingSocketIO:
    def __init__(self, fail: bool = False):
        self.emitted = []
        self.entered = []
        self.left = []
        self.fail = fail
        self.server = SimpleNamespace(
            enter_room=lambda sid, room, namespace=None: self.entered.append((sid, room)),
            leave_room=lambda sid, room, namespace=None: self.left.append((sid, room)),
        )

    def emit(self, event, payload, to=None, namespace=None):
        if self.fail:
            raise RuntimeError("transport gone")
        self.emitted.append((event, payload, to))

    def start_background_task(self, target, *args, **kwargs):
        return target(*args, **kwargs)


def _hub(fail: bool = False):
    sio = RecordingSocketIO(fail=fail)
    reg = SessionRegistry()
    return BroadcastHub(sio, reg), reg, sio


def test_join_tracks_membership_and_enters_transport_room() -> None:
    hub, reg, sio = _hub()
    reg.admit("u1", "s1", "ana")
    hub.join("u1", GLOBAL_ROOM)
    hub.join("u1", "side")

    assert hub.rooms_of("u1") == {GLOBAL_ROOM, "side"}
    assert hub.members(GLOBAL_ROOM) == ["u1"]
    assert sio.entered == [("s1", GLOBAL_ROOM), ("s1", "side")]

    hub.leave("u1", "side")
    assert hub.rooms_of("u1") == {GLOBAL_ROOM}
    hub.forget("u1")
    assert hub.rooms_of("u1") == set()


def test_emit_to_identity_without_session_is_dropped() -> None:
    hub, reg, sio = _hub()
    assert hub.emit_to_identity("nobody", "x", {}) is False
    reg.admit("u1", "s1", "ana")
    assert hub.emit_to_identity("u1", "x", {"a": 1}) is True
    assert sio.emitted == [("x", {"a": 1}, "s1")]


def test_emission_failures_are_swallowed() -> None:
    hub, _, _ = _hub(fail=True)
    hub.emit_to_room(GLOBAL_ROOM, "x", {})
    hub.emit_to_all("x", {})


def test_presence_combines_sessions_and_extra_sources() -> None:
    hub, reg, sio = _hub()
    reg.admit("u1", "s1", "ana")
    ghosts = [{"identityId": "g1", "nickname": "anonimo#1234", "avatarUrl": None, "isAI": True}]
    hub.add_presence_source(lambda: ghosts)

    snap = hub.broadcast_presence()

    assert snap["count"] == 2
    assert [u["identityId"] for u in snap["list"]] == ["u1", "g1"]
    assert (EVT_PRESENCE_COUNT, {"count": 2}, GLOBAL_ROOM) in sio.emitted
    assert (EVT_PRESENCE_LIST, {"users": snap["list"]}, GLOBAL_ROOM) in sio.emitted


def test_send_presence_targets_one_sid() -> None:
    hub, reg, sio = _hub()
    reg.admit("u1", "s1", "ana")
    hub.send_presence("s1")
    assert {to for _, _, to in sio.emitted} == {"s1"}


def test_sequence_numbers_are_per_room() -> None:
    hub, _, _ = _hub()
    assert [hub.next_sequence("a"), hub.next_sequence("a"), hub.next_sequence("b")] == [1, 2, 1]
