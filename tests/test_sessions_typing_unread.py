from realtime.sessions import SessionRegistry
from realtime.typing_status import TypingTracker
from realtime.unread import UnreadLedger

from conftest import FakeClock


# ── session registry ──────────────────────────────────────────────────
def test_admit_overwrites_previous_session_for_same_identity() -> None:
    reg = SessionRegistry()
    assert reg.admit("u1", "sid-a", "ana") is None
    previous = reg.admit("u1", "sid-b", "ana")

    assert previous.sid == "sid-a"
    assert reg.sid_for("u1") == "sid-b"
    assert len(reg) == 1
    assert reg.identity_for_sid("sid-a") is None


def test_remove_is_noop_for_absent_identity_or_stale_sid() -> None:
    reg = SessionRegistry()
    assert reg.remove("ghost") is False

    reg.admit("u1", "sid-a", "ana")
    reg.admit("u1", "sid-b", "ana")
    # The replaced socket disconnecting must not evict the live one.
    assert reg.remove("u1", "sid-a") is False
    assert reg.is_active("u1")

    assert reg.remove("u1", "sid-b") is True
    assert not reg.is_active("u1")


def test_list_active_keeps_insertion_order_and_public_shape() -> None:
    reg = SessionRegistry()
    reg.admit("u1", "s1", "ana", "a.png")
    reg.admit("u2", "s2", "bia")

    snapshot = [s.public() for s in reg.list_active()]
    assert [s["identityId"] for s in snapshot] == ["u1", "u2"]
    assert snapshot[0] == {"identityId": "u1", "nickname": "ana", "avatarUrl": "a.png", "isAI": False}


# ── typing tracker ────────────────────────────────────────────────────
def test_stale_typists_are_dropped_and_do_not_come_back() -> None:
    clock = FakeClock()
    tracker = TypingTracker(timeout=3.0, clock=clock)
    tracker.set_typing("u1", "ana")
    clock.advance(2.0)
    tracker.set_typing("u2", "bia")

    assert tracker.active_typists() == ["ana", "bia"]

    clock.advance(1.5)  # ana is 3.5s old, bia 1.5s
    assert tracker.active_typists() == ["bia"]
    assert "u1" not in tracker

    clock.advance(0.1)
    assert tracker.active_typists() == ["bia"]


def test_refresh_keeps_typist_alive_and_position() -> None:
    clock = FakeClock()
    tracker = TypingTracker(timeout=3.0, clock=clock)
    tracker.set_typing("u1", "ana")
    tracker.set_typing("u2", "bia")
    clock.advance(2.5)
    tracker.set_typing("u1", "ana")
    clock.advance(1.0)

    assert tracker.active_typists() == ["ana"]


def test_entry_exactly_at_timeout_is_still_active() -> None:
    clock = FakeClock()
    tracker = TypingTracker(timeout=3.0, clock=clock)
    tracker.set_typing("u1", "ana")
    clock.advance(3.0)
    assert tracker.active_typists() == ["ana"]


def test_clear_typing_reports_whether_entry_existed() -> None:
    tracker = TypingTracker(clock=FakeClock())
    tracker.set_typing("u1", "ana")
    assert tracker.clear_typing("u1") is True
    assert tracker.clear_typing("u1") is False
    assert tracker.active_typists() == []


# ── unread ledger ─────────────────────────────────────────────────────
def test_record_delivery_skips_author_and_viewers() -> None:
    ledger = UnreadLedger()
    ledger.mark_viewing("viewer")

    updated = ledger.record_delivery("author", ledger.viewers(), ["author", "viewer", "away1", "away2", "away1"])

    assert updated == [("away1", 1), ("away2", 1)]
    assert ledger.count("author") == 0
    assert ledger.count("viewer") == 0


def test_mark_viewing_resets_to_zero_and_mark_away_resumes_counting() -> None:
    ledger = UnreadLedger()
    for _ in range(3):
        ledger.record_delivery("author", ledger.viewers(), ["u1"])
    assert ledger.count("u1") == 3

    assert ledger.mark_viewing("u1") == 0
    assert ledger.count("u1") == 0
    assert ledger.record_delivery("author", ledger.viewers(), ["u1"]) == []

    ledger.mark_away("u1")
    assert ledger.record_delivery("author", ledger.viewers(), ["u1"]) == [("u1", 1)]


def test_unknown_identity_counts_as_zero_and_forget_clears() -> None:
    ledger = UnreadLedger()
    assert ledger.count("nobody") == 0
    ledger.record_delivery("a", set(), ["u1"])
    ledger.forget("u1")
    assert ledger.count("u1") == 0
