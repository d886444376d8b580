"""Relay-side connection state."""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections.abc import Callable

from .codec import CODEC_JSON
from .constants import OUTBOX_SIZE

logger = logging.getLogger(__name__)

_conn_ids = itertools.count(1)


class Connection:
    """One admitted client channel.

    Thread-Safety:
        ``rooms`` and ``closed`` are guarded by ``self._lock``. Outbound frames
        go through a bounded asyncio queue drained by the transport's writer
        task, so routing code never awaits on a socket.

        A closed connection accepts no new rooms and silently drops deliveries,
        so a disconnect racing a broadcast never produces partial state.
    """

    def __init__(
        self,
        conn_id: str | None = None,
        *,
        origin: str | None = None,
        codec: str = CODEC_JSON,
        outbox_size: int = OUTBOX_SIZE,
    ):
        """Initialize a connection.

        Args:
            conn_id: Identity handle (generated if not provided)
            origin: Origin header presented at upgrade time, for logging
            codec: Wire codec negotiated for this connection
            outbox_size: Maximum queued outbound frames before the
                connection is considered stalled
        """
        self.conn_id = conn_id or f"c{next(_conn_ids)}"
        self.origin = origin
        self.codec = codec
        self.outbox: asyncio.Queue[dict] = asyncio.Queue(maxsize=outbox_size)
        self.on_stall: Callable[[Connection], None] | None = None

        self._rooms: set[str] = set()
        self._closed = False
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Connection({self.conn_id!r})"

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def rooms(self) -> frozenset[str]:
        with self._lock:
            return frozenset() if self._closed else frozenset(self._rooms)

    def add_room(self, room: str) -> bool:
        """Record membership. Returns False if the connection is closed."""
        with self._lock:
            if self._closed:
                return False
            self._rooms.add(room)
            return True

    def has_room(self, room: str) -> bool:
        with self._lock:
            return not self._closed and room in self._rooms

    def close(self) -> frozenset[str]:
        """Mark the connection closed and hand back the rooms it held.

        Idempotent: later calls return the same rooms, so the room table can
        still unlink a connection that closed itself on stall.
        """
        with self._lock:
            self._closed = True
            return frozenset(self._rooms)

    def deliver(self, frame: dict) -> bool:
        """Queue a frame for the writer task.

        Returns:
            True if queued, False if the connection is closed or stalled
        """
        if self.closed:
            return False
        try:
            self.outbox.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning("Outbox full, closing stalled connection conn=%s", self.conn_id)
            self.close()
            if self.on_stall:
                try:
                    self.on_stall(self)
                except Exception as e:
                    logger.exception("Error in on_stall callback: %s", e)
            return False
        return True

    def drain(self) -> list[dict]:
        """Pop every queued frame without waiting."""
        frames = []
        while True:
            try:
                frames.append(self.outbox.get_nowait())
            except asyncio.QueueEmpty:
                return frames
