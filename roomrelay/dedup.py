"""Bounded envelope-ID deduplication cache."""

from __future__ import annotations

import threading
import time
import zlib
from collections import OrderedDict
from collections.abc import Callable

from .constants import DEDUP_CAPACITY


class _Shard:
    __slots__ = ("lock", "entries", "capacity")

    def __init__(self, capacity: int) -> None:
        self.lock = threading.Lock()
        self.entries: OrderedDict[str, float] = OrderedDict()
        self.capacity = capacity

    def insert(self, mid: str, ts: float) -> None:
        # Caller holds the lock. Re-marking keeps the original slot and time.
        if mid in self.entries:
            return
        self.entries[mid] = ts
        while len(self.entries) > self.capacity:
            self.entries.popitem(last=False)


class DedupCache:
    """Maps envelope ID to first-seen time, bounded by count.

    Eviction is by insertion order (oldest first) once the cache exceeds its
    capacity. Nothing expires by age: an ID survives as long as fewer than
    ``capacity`` newer IDs have been recorded after it.

    Thread-Safety:
        IDs are spread over ``shards`` independent shards by CRC32, each with
        its own lock. Slots are split so the shards together hold exactly
        ``capacity`` IDs. With a single shard eviction order is exact across
        all IDs; with more, it is exact within each shard.
    """

    def __init__(
        self,
        capacity: int = DEDUP_CAPACITY,
        *,
        shards: int = 1,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the cache.

        Args:
            capacity: Maximum number of remembered IDs
            shards: Number of independently locked shards
            clock: Time source for first-seen timestamps

        Raises:
            ValueError: If capacity or shards is not positive, or shards
                exceeds capacity
        """
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if shards <= 0:
            raise ValueError("shards must be positive")
        if shards > capacity:
            raise ValueError("shards cannot exceed capacity")
        self.capacity = capacity
        self.clock = clock
        base, extra = divmod(capacity, shards)
        self._shards = tuple(_Shard(base + (1 if i < extra else 0)) for i in range(shards))

    def _shard(self, mid: str) -> _Shard:
        if len(self._shards) == 1:
            return self._shards[0]
        return self._shards[zlib.crc32(mid.encode("utf-8")) % len(self._shards)]

    def has_seen(self, mid: str) -> bool:
        shard = self._shard(mid)
        with shard.lock:
            return mid in shard.entries

    def mark_seen(self, mid: str) -> None:
        """Record an ID with the current time, evicting the oldest if over capacity."""
        shard = self._shard(mid)
        with shard.lock:
            shard.insert(mid, self.clock())

    def check_and_mark(self, mid: str) -> bool:
        """Atomically test and record an ID.

        Returns:
            True if the ID had already been seen (nothing recorded), False if
            it was new and is now recorded
        """
        shard = self._shard(mid)
        with shard.lock:
            if mid in shard.entries:
                return True
            shard.insert(mid, self.clock())
            return False

    def first_seen(self, mid: str) -> float | None:
        shard = self._shard(mid)
        with shard.lock:
            return shard.entries.get(mid)

    def __contains__(self, mid: object) -> bool:
        return isinstance(mid, str) and self.has_seen(mid)

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.entries)
        return total
