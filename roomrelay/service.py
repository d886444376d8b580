"""Relay service owning all shared relay state."""

from __future__ import annotations

import logging
import threading
from typing import Any

from .auth import AdmissionGate
from .codec import CODEC_JSON
from .config import RelayConfig
from .dedup import DedupCache
from .rooms import RoomTable
from .router import MessageRouter
from .session import Connection

logger = logging.getLogger(__name__)


class RelayService:
    """Relay state: admission gate, room table, dedup cache and counters.

    One instance is created per process and handed to the transport layer;
    nothing here is module-global, so tests can build as many as they like.

    Thread-Safety:
        The room table and dedup cache carry their own fine-grained locks.
        ``self._lock`` only guards the connection registry and counters.
    """

    def __init__(self, config: RelayConfig):
        """Initialize the relay service.

        Args:
            config: Validated relay configuration
        """
        self.config = config
        self.gate = AdmissionGate(config.tokens)
        self.rooms = RoomTable(config.rooms)
        self.dedup = DedupCache(config.dedup_capacity, shards=config.dedup_shards)
        self.router = MessageRouter(self)

        self._lock = threading.Lock()
        self._connections: set[Connection] = set()
        self._counters: dict[str, int] = {
            "connects": 0,
            "disconnects": 0,
            "rejected": 0,
            "joins": 0,
            "joins_rejected": 0,
            "msgs_forwarded": 0,
            "msgs_deduped": 0,
            "msgs_denied": 0,
            "msgs_invalid": 0,
            "frames_bad": 0,
            "deliveries": 0,
        }

    def inc(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + delta

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def open_connection(
        self,
        *,
        origin: str | None = None,
        codec: str = CODEC_JSON,
        conn_id: str | None = None,
    ) -> Connection:
        """Register an admitted connection with empty membership."""
        connection = Connection(conn_id, origin=origin, codec=codec)
        with self._lock:
            self._connections.add(connection)
            self._counters["connects"] += 1
        logger.info(
            "connect conn=%s origin=%s codec=%s",
            connection.conn_id,
            origin or "unknown",
            codec,
        )
        return connection

    def close_connection(self, connection: Connection, reason: str = "closed") -> None:
        """Drop a connection and its membership. Safe to call twice."""
        with self._lock:
            if connection not in self._connections:
                return
            self._connections.discard(connection)
            self._counters["disconnects"] += 1
        rooms_count = self.rooms.drop(connection)
        logger.info(
            "disconnect conn=%s rooms=%d reason=%s", connection.conn_id, rooms_count, reason
        )

    def handle_frame(self, connection: Connection, frame: dict) -> None:
        self.router.route(connection, frame)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            counters = dict(self._counters)
            connections = len(self._connections)
        return {
            "connections": connections,
            "rooms": self.rooms.room_sizes(),
            "dedup_entries": len(self.dedup),
            "counters": counters,
        }
