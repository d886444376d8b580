from __future__ import annotations

from roomrelay.envelope import ChatAck

from .conftest import chat_envelope


def chats(frames):
    return [f for f in frames if f["type"] == "chat"]


def acks(frames):
    return [f for f in frames if f["type"] == "chat_ack"]


# -----------------------------
# Delivery properties
# -----------------------------


def test_two_members_receive_broadcast_and_sender_is_acked(service):
    a = service.open_connection()
    b = service.open_connection()
    service.handle_frame(a, {"type": "join", "room": "family"})
    service.handle_frame(b, {"type": "join", "room": "family"})
    a.drain()
    b.drain()

    service.handle_frame(a, {"type": "chat", "envelope": chat_envelope("m1")})

    a_frames = a.drain()
    b_frames = b.drain()
    assert [f["envelope"]["id"] for f in chats(a_frames)] == ["m1"]
    assert [f["envelope"]["id"] for f in chats(b_frames)] == ["m1"]
    assert acks(a_frames) == [{"type": "chat_ack", "id": "m1", "ok": True}]
    assert acks(b_frames) == []


def test_sender_receives_own_broadcast_as_delivery_confirmation(service):
    # The echo to the sender is kept on purpose: it confirms delivery through
    # the same path remote members use, and arrives before the ack.
    a = service.open_connection()
    service.handle_frame(a, {"type": "join", "room": "family"})
    a.drain()

    service.handle_frame(a, {"type": "chat", "envelope": chat_envelope("m1")})

    frames = a.drain()
    assert [f["type"] for f in frames] == ["chat", "chat_ack"]


def test_duplicate_id_is_acked_but_not_rebroadcast(service):
    a = service.open_connection()
    b = service.open_connection()
    service.handle_frame(a, {"type": "join", "room": "family"})
    service.handle_frame(b, {"type": "join", "room": "family"})
    a.drain()
    b.drain()

    service.handle_frame(a, {"type": "chat", "envelope": chat_envelope("m1")})
    service.handle_frame(a, {"type": "chat", "envelope": chat_envelope("m1")})

    a_frames = a.drain()
    assert len(chats(a_frames)) == 1
    assert len(chats(b.drain())) == 1
    assert acks(a_frames) == [
        {"type": "chat_ack", "id": "m1", "ok": True},
        {"type": "chat_ack", "id": "m1", "ok": True},
    ]
    assert service.stats()["counters"]["msgs_deduped"] == 1


def test_not_in_room_is_denied_without_broadcast(service):
    a = service.open_connection()
    b = service.open_connection()
    service.handle_frame(b, {"type": "join", "room": "family"})
    b.drain()

    ack = service.router.handle_chat(a, chat_envelope("m1"))

    assert ack == ChatAck(id="m1", ok=False, reason="not_in_room")
    assert b.drain() == []
    assert not service.dedup.has_seen("m1")


def test_member_of_other_room_is_denied(service):
    a = service.open_connection()
    service.handle_frame(a, {"type": "join", "room": "emergency"})
    ack = service.router.handle_chat(a, chat_envelope("m1", room="family"))
    assert ack.reason == "not_in_room"


def test_invalid_message_ack_carries_original_id(service):
    a = service.open_connection()
    service.handle_frame(a, {"type": "join", "room": "family"})
    a.drain()

    service.handle_frame(a, {"type": "chat", "envelope": chat_envelope("m9", body="")})

    (ack,) = a.drain()
    assert ack["type"] == "chat_ack"
    assert ack["id"] == "m9"
    assert ack["ok"] is False
    assert ack["reason"] == "invalid_message"
    assert "body" in ack["detail"]


def test_missing_envelope_still_gets_an_ack(service):
    a = service.open_connection()
    service.handle_frame(a, {"type": "chat"})
    (ack,) = a.drain()
    assert ack == {
        "type": "chat_ack",
        "id": "",
        "ok": False,
        "reason": "invalid_message",
        "detail": "envelope must be an object",
    }


def test_room_is_normalized_before_membership_check(service):
    a = service.open_connection()
    service.handle_frame(a, {"type": "join", "room": "family"})
    a.drain()
    ack = service.router.handle_chat(a, chat_envelope("m1", room=" FAMILY"))
    assert ack.ok
    (chat,) = chats(a.drain())
    assert chat["envelope"]["room"] == "family"


def test_dedup_holds_across_disconnect(service):
    a = service.open_connection()
    service.handle_frame(a, {"type": "join", "room": "family"})
    service.handle_frame(a, {"type": "chat", "envelope": chat_envelope("m1")})
    service.close_connection(a)

    again = service.open_connection()
    service.handle_frame(again, {"type": "join", "room": "family"})
    again.drain()
    service.handle_frame(again, {"type": "chat", "envelope": chat_envelope("m1")})

    frames = again.drain()
    assert chats(frames) == []
    assert acks(frames) == [{"type": "chat_ack", "id": "m1", "ok": True}]


def test_closed_member_is_skipped_in_broadcast(service):
    a = service.open_connection()
    b = service.open_connection()
    service.handle_frame(a, {"type": "join", "room": "family"})
    service.handle_frame(b, {"type": "join", "room": "family"})
    b.close()

    ack = service.router.handle_chat(a, chat_envelope("m1"))
    assert ack.ok
    assert b.drain() == [{"type": "join_ack", "room": "family", "ok": True}]


# -----------------------------
# Join and misc frames
# -----------------------------


def test_join_not_allowed_frame(service):
    a = service.open_connection()
    service.handle_frame(a, {"type": "join", "room": "Attic"})
    (frame,) = a.drain()
    assert frame == {
        "type": "join_ack",
        "room": "attic",
        "ok": False,
        "reason": "room_not_allowed",
        "allowedRooms": ["emergency", "family", "vacant-1"],
    }


def test_ping_and_unknown_type(service):
    a = service.open_connection()
    service.handle_frame(a, {"type": "ping", "body": 5})
    service.handle_frame(a, {"type": "shout"})
    pong, err = a.drain()
    assert pong == {"type": "pong", "body": 5}
    assert err["type"] == "error"


def test_close_connection_is_idempotent(service):
    a = service.open_connection()
    service.handle_frame(a, {"type": "join", "room": "family"})
    service.close_connection(a)
    service.close_connection(a)
    stats = service.stats()
    assert stats["connections"] == 0
    assert stats["counters"]["disconnects"] == 1
    assert stats["rooms"]["family"] == 0
