"""Utility functions shared by the relay and the client."""

from __future__ import annotations

import time
import uuid

from .constants import MAX_ROOM_LEN


def now_ms() -> int:
    """Get current time in milliseconds.

    Returns:
        Current time as milliseconds since epoch
    """
    return int(time.time() * 1000)


def new_message_id() -> str:
    """Generate a random envelope ID.

    Returns:
        UUID4 string
    """
    return str(uuid.uuid4())


def normalize_room_name(room: object, max_length: int = MAX_ROOM_LEN) -> str | None:
    """Normalize a room name to lowercase and stripped.

    Args:
        room: Room name to normalize
        max_length: Maximum allowed length after normalization

    Returns:
        Normalized room name, or None if invalid
    """
    if not isinstance(room, str):
        return None

    normalized = room.strip().lower()
    if not normalized:
        return None

    if len(normalized) > max_length:
        return None

    return normalized


def split_csv(value: str | None) -> list[str]:
    """Split a comma-separated setting, dropping blanks."""
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]
