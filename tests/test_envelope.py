from __future__ import annotations

import pytest

from roomrelay.constants import MAX_BODY_LEN, MAX_ROOM_LEN, MAX_SENDER_LEN
from roomrelay.envelope import (
    ChatAck,
    Envelope,
    InvalidEnvelope,
    JoinAck,
    make_envelope,
    validate_envelope,
)

from .conftest import chat_envelope


def test_valid_envelope_normalizes_room():
    env = validate_envelope(chat_envelope(room="  Family "))
    assert env == Envelope(
        id="m1", room="family", sender="laptop", created_at=1700000000000, body="hi"
    )


def test_empty_body_rejected_with_original_id():
    with pytest.raises(InvalidEnvelope) as exc:
        validate_envelope(chat_envelope(mid="keep-me", body=""))
    assert exc.value.msg_id == "keep-me"
    assert exc.value.reason == "invalid_message"
    assert "body" in exc.value.detail


@pytest.mark.parametrize(
    "patch, fragment",
    [
        ({"id": ""}, "id"),
        ({"id": 42}, "id"),
        ({"room": ""}, "room"),
        ({"room": "   "}, "room"),
        ({"room": "r" * (MAX_ROOM_LEN + 1)}, "room"),
        ({"sender": ""}, "sender"),
        ({"sender": "s" * (MAX_SENDER_LEN + 1)}, "sender"),
        ({"createdAt": -1}, "createdAt"),
        ({"createdAt": 1.5}, "createdAt"),
        ({"createdAt": True}, "createdAt"),
        ({"body": "b" * (MAX_BODY_LEN + 1)}, "body"),
        ({"body": None}, "body"),
    ],
)
def test_first_violation_is_reported(patch, fragment):
    with pytest.raises(InvalidEnvelope) as exc:
        validate_envelope(chat_envelope(**patch))
    assert fragment in exc.value.detail


def test_non_string_id_is_not_echoed():
    with pytest.raises(InvalidEnvelope) as exc:
        validate_envelope(chat_envelope(id=42))
    assert exc.value.msg_id == ""


def test_non_object_envelope():
    with pytest.raises(InvalidEnvelope) as exc:
        validate_envelope(["not", "a", "dict"])
    assert exc.value.msg_id == ""


def test_missing_field_keeps_id():
    raw = chat_envelope(mid="abc")
    del raw["sender"]
    with pytest.raises(InvalidEnvelope) as exc:
        validate_envelope(raw)
    assert exc.value.msg_id == "abc"


def test_make_envelope_generates_id_and_timestamp():
    env = make_envelope(" Family", "hello", sender="phone")
    assert env.room == "family"
    assert env.id
    assert env.created_at > 0
    assert validate_envelope(env.to_dict()) == env


def test_chat_ack_frame_only_carries_reason_on_failure():
    assert ChatAck(id="m1", ok=True).to_frame() == {"type": "chat_ack", "id": "m1", "ok": True}
    frame = ChatAck(id="m1", ok=False, reason="not_in_room").to_frame()
    assert frame["reason"] == "not_in_room"
    assert ChatAck.from_frame(frame) == ChatAck(id="m1", ok=False, reason="not_in_room")


def test_join_ack_allowed_rooms_round_trip():
    ack = JoinAck(room="attic", ok=False, reason="room_not_allowed", allowed_rooms=("a", "b"))
    frame = ack.to_frame()
    assert frame["allowedRooms"] == ["a", "b"]
    assert JoinAck.from_frame(frame) == ack


def test_unreadable_acks_parse_to_none():
    assert ChatAck.from_frame({"type": "chat_ack", "ok": True}) is None
    assert JoinAck.from_frame({"type": "join_ack", "room": "family"}) is None
