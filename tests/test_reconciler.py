from __future__ import annotations

import pytest

from roomrelay.envelope import ChatAck, make_envelope
from roomrelay.reconciler import DeliveryReconciler, Failed, Pending, RetryExhausted, Sent


@pytest.fixture
def changes():
    return []


@pytest.fixture
def reconciler(changes):
    return DeliveryReconciler(on_change=lambda mid, state: changes.append((mid, state)))


def envelope(mid="m1", room="family"):
    return make_envelope(room, "hi", sender="laptop", mid=mid)


def test_submit_starts_pending(reconciler, changes):
    entry = reconciler.submit(envelope())
    assert entry.attempts == 0
    assert entry.room == "family"
    assert reconciler.state("m1") == Pending(0)
    assert reconciler.is_local("m1")
    assert changes == [("m1", Pending(0))]


def test_successful_ack_settles(reconciler):
    reconciler.submit(envelope())
    assert reconciler.acknowledge(ChatAck(id="m1", ok=True)) == Sent()
    assert not reconciler.is_pending("m1")
    assert reconciler.next_attempt("m1") is False


def test_failed_ack_is_terminal_and_not_retried(reconciler):
    reconciler.submit(envelope())
    state = reconciler.acknowledge(ChatAck(id="m1", ok=False, reason="invalid_message"))
    assert state == Failed("invalid_message")
    assert reconciler.pending_by_room() == {}
    assert reconciler.next_attempt("m1") is False


def test_ack_for_unknown_or_settled_id_is_ignored(reconciler):
    assert reconciler.acknowledge(ChatAck(id="ghost", ok=True)) is None
    reconciler.submit(envelope())
    reconciler.acknowledge(ChatAck(id="m1", ok=True))
    assert reconciler.acknowledge(ChatAck(id="m1", ok=False, reason="not_in_room")) is None
    assert reconciler.state("m1") == Sent()


def test_retry_ceiling(reconciler, changes):
    reconciler.submit(envelope())
    for attempt in range(1, 6):
        assert reconciler.next_attempt("m1") is True
        assert reconciler.state("m1") == Pending(attempt)

    assert reconciler.next_attempt("m1") is False
    assert reconciler.state("m1") == RetryExhausted()
    assert reconciler.state("m1").reason == "retry_limit"
    assert not reconciler.is_pending("m1")
    assert reconciler.next_attempt("m1") is False
    assert changes[-1] == ("m1", RetryExhausted())


def test_pending_by_room_keeps_submission_order(reconciler):
    reconciler.submit(envelope("a", "family"))
    reconciler.submit(envelope("b", "emergency"))
    reconciler.submit(envelope("c", "family"))
    grouped = reconciler.pending_by_room()
    assert [e.id for e in grouped["family"]] == ["a", "c"]
    assert [e.id for e in grouped["emergency"]] == ["b"]


def test_fail_marks_pending_terminal(reconciler):
    reconciler.submit(envelope())
    assert reconciler.fail("m1", "join_denied")
    assert reconciler.state("m1") == Failed("join_denied")
    assert reconciler.fail("m1", "join_denied") is False


def test_resubmitting_same_id_is_rejected(reconciler):
    reconciler.submit(envelope())
    with pytest.raises(ValueError):
        reconciler.submit(envelope())


def test_receive_is_idempotent_per_id(reconciler):
    env = envelope("r1")
    assert reconciler.receive(env) is True
    assert reconciler.receive(env) is False
    assert reconciler.receive(envelope("r2")) is True


def test_callback_errors_do_not_break_state():
    def boom(mid, state):
        raise RuntimeError("ui exploded")

    reconciler = DeliveryReconciler(on_change=boom)
    reconciler.submit(envelope())
    assert reconciler.acknowledge(ChatAck(id="m1", ok=True)) == Sent()
