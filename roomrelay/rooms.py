"""Room membership table with an allowlist."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

from .constants import MAX_ROOM_LEN, R_INVALID_ROOM, R_NOT_CONNECTED, R_ROOM_NOT_ALLOWED
from .envelope import JoinAck
from .session import Connection
from .utils import normalize_room_name

logger = logging.getLogger(__name__)


class _RoomShard:
    """Members of one room behind their own lock."""

    __slots__ = ("lock", "members")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.members: set[Connection] = set()


class RoomTable:
    """Relay-held room membership.

    Thread-Safety:
        One shard per allowed room, each with its own lock. The shard map is
        built once from the allowlist and never resized, so lookups need no
        table-wide lock and a busy room never stalls joins in another.
    """

    def __init__(self, allowed_rooms: Iterable[str], max_room_len: int = MAX_ROOM_LEN):
        """Initialize the table.

        Args:
            allowed_rooms: Room names accepted by join (normalized here)
            max_room_len: Maximum room name length after normalization

        Raises:
            ValueError: If an allowed room name is invalid
        """
        self.max_room_len = max_room_len
        self._shards: dict[str, _RoomShard] = {}
        for raw in allowed_rooms:
            room = normalize_room_name(raw, max_room_len)
            if not room:
                raise ValueError(f"invalid room name in allowlist: {raw!r}")
            self._shards.setdefault(room, _RoomShard())
        self.allowed_rooms: tuple[str, ...] = tuple(sorted(self._shards))

    def join(self, connection: Connection, raw_room: object) -> JoinAck:
        """Validate a join request and record membership.

        Args:
            connection: Requesting connection
            raw_room: Room string as sent by the client

        Returns:
            JoinAck; rejoining a room already held is a no-op success, and
            every rejection carries the sorted allowlist
        """
        echo = raw_room if isinstance(raw_room, str) else ""
        room = normalize_room_name(raw_room, self.max_room_len)
        if room is None:
            logger.info(
                "join_reject conn=%s room=%r reason=%s", connection.conn_id, echo, R_INVALID_ROOM
            )
            return JoinAck(
                room=echo, ok=False, reason=R_INVALID_ROOM, allowed_rooms=self.allowed_rooms
            )

        shard = self._shards.get(room)
        if shard is None:
            logger.info(
                "join_reject conn=%s room=%s reason=%s",
                connection.conn_id,
                room,
                R_ROOM_NOT_ALLOWED,
            )
            return JoinAck(
                room=room,
                ok=False,
                reason=R_ROOM_NOT_ALLOWED,
                allowed_rooms=self.allowed_rooms,
            )

        if connection.has_room(room):
            return JoinAck(room=room, ok=True)

        with shard.lock:
            if not connection.add_room(room):
                logger.debug("join on closed connection conn=%s room=%s", connection.conn_id, room)
                return JoinAck(
                    room=room, ok=False, reason=R_NOT_CONNECTED, allowed_rooms=self.allowed_rooms
                )
            shard.members.add(connection)

        logger.info("join conn=%s room=%s", connection.conn_id, room)
        return JoinAck(room=room, ok=True)

    def is_member(self, connection: Connection, room: str) -> bool:
        return connection.has_room(room)

    def members(self, room: str) -> tuple[Connection, ...]:
        """Snapshot of a room's open connections at call time."""
        shard = self._shards.get(room)
        if shard is None:
            return ()
        with shard.lock:
            return tuple(c for c in shard.members if not c.closed)

    def drop(self, connection: Connection) -> int:
        """Close a connection and remove it from every room it joined.

        Returns:
            Number of rooms the connection was in
        """
        rooms = connection.close()
        for room in rooms:
            shard = self._shards.get(room)
            if shard is None:
                continue
            with shard.lock:
                shard.members.discard(connection)
        return len(rooms)

    def room_sizes(self) -> dict[str, int]:
        sizes = {}
        for room, shard in self._shards.items():
            with shard.lock:
                sizes[room] = len(shard.members)
        return sizes
