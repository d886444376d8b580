"""Chat envelope creation, validation and acknowledgment records."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .constants import (
    ENV_BODY,
    ENV_CREATED_AT,
    ENV_ID,
    ENV_ROOM,
    ENV_SENDER,
    F_CHAT_ACK,
    F_JOIN_ACK,
    MAX_BODY_LEN,
    MAX_ROOM_LEN,
    MAX_SENDER_LEN,
    R_INVALID_MESSAGE,
)
from .utils import new_message_id, now_ms


class InvalidEnvelope(ValueError):
    """Raised when an inbound envelope fails validation.

    Attributes:
        msg_id: Original envelope ID if one could be extracted, else ""
        detail: Description of the first violated constraint
        reason: Failure reason reported in the acknowledgment
    """

    reason = R_INVALID_MESSAGE

    def __init__(self, detail: str, msg_id: str = ""):
        super().__init__(detail)
        self.detail = detail
        self.msg_id = msg_id


@dataclass(frozen=True)
class Envelope:
    """One chat message unit. ``id`` is reused across retransmissions."""

    id: str
    room: str
    sender: str
    created_at: int
    body: str

    def to_dict(self) -> dict[str, Any]:
        return {
            ENV_ID: self.id,
            ENV_ROOM: self.room,
            ENV_SENDER: self.sender,
            ENV_CREATED_AT: self.created_at,
            ENV_BODY: self.body,
        }


@dataclass(frozen=True)
class ChatAck:
    """Relay reply to one chat submission."""

    id: str
    ok: bool
    reason: str | None = None
    detail: str | None = None

    def to_frame(self) -> dict[str, Any]:
        frame: dict[str, Any] = {"type": F_CHAT_ACK, "id": self.id, "ok": self.ok}
        if not self.ok:
            frame["reason"] = self.reason or R_INVALID_MESSAGE
            if self.detail:
                frame["detail"] = self.detail
        return frame

    @classmethod
    def from_frame(cls, frame: dict) -> ChatAck | None:
        """Parse a ``chat_ack`` frame, or None if it is unusable."""
        mid = frame.get("id")
        ok = frame.get("ok")
        if not isinstance(mid, str) or not mid or not isinstance(ok, bool):
            return None
        reason = frame.get("reason")
        detail = frame.get("detail")
        return cls(
            id=mid,
            ok=ok,
            reason=reason if isinstance(reason, str) else None,
            detail=detail if isinstance(detail, str) else None,
        )


@dataclass(frozen=True)
class JoinAck:
    """Relay reply to one join request."""

    room: str
    ok: bool
    reason: str | None = None
    allowed_rooms: tuple[str, ...] | None = None

    def to_frame(self) -> dict[str, Any]:
        frame: dict[str, Any] = {"type": F_JOIN_ACK, "room": self.room, "ok": self.ok}
        if not self.ok:
            frame["reason"] = self.reason
            if self.allowed_rooms is not None:
                frame["allowedRooms"] = list(self.allowed_rooms)
        return frame

    @classmethod
    def from_frame(cls, frame: dict) -> JoinAck | None:
        """Parse a ``join_ack`` frame, or None if it is unusable."""
        room = frame.get("room")
        ok = frame.get("ok")
        if not isinstance(room, str) or not isinstance(ok, bool):
            return None
        reason = frame.get("reason")
        allowed = frame.get("allowedRooms")
        allowed_rooms = None
        if isinstance(allowed, list) and all(isinstance(r, str) for r in allowed):
            allowed_rooms = tuple(allowed)
        return cls(
            room=room,
            ok=ok,
            reason=reason if isinstance(reason, str) else None,
            allowed_rooms=allowed_rooms,
        )


def make_envelope(
    room: str,
    body: str,
    *,
    sender: str,
    mid: str | None = None,
    created_at: int | None = None,
) -> Envelope:
    """Create an outgoing envelope.

    Args:
        room: Target room (normalized here)
        body: Message text
        sender: Display label of the sender
        mid: Optional message ID (generated if not provided)
        created_at: Optional timestamp in milliseconds (current time if not provided)

    Returns:
        Envelope ready to submit
    """
    return Envelope(
        id=mid or new_message_id(),
        room=room.strip().lower(),
        sender=sender,
        created_at=now_ms() if created_at is None else created_at,
        body=body,
    )


def extract_id(raw: Any) -> str:
    """Best-effort ID extraction from an unvalidated envelope."""
    if not isinstance(raw, dict):
        return ""
    mid = raw.get(ENV_ID)
    return mid if isinstance(mid, str) else ""


def _bounded_text(raw: dict, key: str, max_len: int, mid: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str):
        raise InvalidEnvelope(f"{key} must be a string", mid)
    if len(value) == 0:
        raise InvalidEnvelope(f"{key} cannot be empty", mid)
    if len(value) > max_len:
        raise InvalidEnvelope(f"{key} too long (max {max_len} characters)", mid)
    return value


def validate_envelope(raw: Any) -> Envelope:
    """Validate an inbound envelope and normalize its room.

    Args:
        raw: Decoded envelope value

    Returns:
        Normalized envelope

    Raises:
        InvalidEnvelope: On the first violated constraint, carrying the
            original ID when it is a string
    """
    mid = extract_id(raw)

    if not isinstance(raw, dict):
        raise InvalidEnvelope("envelope must be an object", mid)

    if not isinstance(raw.get(ENV_ID), str):
        raise InvalidEnvelope("id must be a string", mid)
    if not mid:
        raise InvalidEnvelope("id cannot be empty", mid)

    room = _bounded_text(raw, ENV_ROOM, MAX_ROOM_LEN, mid).strip().lower()
    if not room:
        raise InvalidEnvelope("room cannot be empty", mid)

    sender = _bounded_text(raw, ENV_SENDER, MAX_SENDER_LEN, mid)

    created_at = raw.get(ENV_CREATED_AT)
    if not isinstance(created_at, int) or isinstance(created_at, bool):
        raise InvalidEnvelope(f"{ENV_CREATED_AT} must be an integer", mid)
    if created_at < 0:
        raise InvalidEnvelope(f"{ENV_CREATED_AT} must be non-negative", mid)

    body = _bounded_text(raw, ENV_BODY, MAX_BODY_LEN, mid)

    return Envelope(id=mid, room=room, sender=sender, created_at=created_at, body=body)


def envelope_from_wire(raw: Any) -> Envelope | None:
    """Parse a broadcast envelope on the client side, or None if malformed."""
    try:
        return validate_envelope(raw)
    except InvalidEnvelope:
        return None
