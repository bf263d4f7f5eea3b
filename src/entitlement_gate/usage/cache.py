"""Process-wide usage cache, sharded by principal.

Each shard owns a lock and a dict of per-principal entries, so principals
that hash to different shards never contend. An entry covers one calendar
month (a running total) and a time-ordered deque of recent events that
spans at least the trailing hour.

Callers hold the shard lock (``with cache.shard(principal_id) as entries``)
for every read-modify-write on an entry, which makes increments atomic.
Eviction only drops entries; durable storage stays authoritative.
"""

from __future__ import annotations

import threading
import zlib
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import NamedTuple

DEFAULT_CACHE_TTL = timedelta(minutes=5)
DEFAULT_SHARDS = 16


class UsageEvent(NamedTuple):
    """A single recent usage event held in a cache entry."""

    timestamp: datetime
    weight: int


@dataclass
class UsageEntry:
    """Cached usage for one principal."""

    loaded_at: datetime
    touched_at: datetime
    month_start: datetime
    month_end: datetime
    monthly_total: int
    recent_since: datetime
    recent: deque[UsageEvent] = field(default_factory=deque)

    def is_fresh(self, now: datetime, ttl: timedelta) -> bool:
        return now - self.loaded_at < ttl and self.month_start <= now < self.month_end

    def add(self, timestamp: datetime, weight: int) -> None:
        """Count one event in the month total and the recent deque."""
        if self.month_start <= timestamp < self.month_end:
            self.monthly_total += weight
        if timestamp >= self.recent_since:
            event = UsageEvent(timestamp, weight)
            if not self.recent or self.recent[-1].timestamp <= timestamp:
                self.recent.append(event)
            else:
                # Out-of-order timestamp: keep the deque sorted.
                items = sorted([*self.recent, event], key=lambda e: e.timestamp)
                self.recent = deque(items)

    def recent_sum(self, start: datetime, end: datetime | None = None) -> int:
        return sum(
            e.weight for e in self.recent
            if e.timestamp >= start and (end is None or e.timestamp < end)
        )

    def prune(self, cutoff: datetime) -> None:
        """Drop recent events older than *cutoff* from the left of the deque."""
        while self.recent and self.recent[0].timestamp < cutoff:
            self.recent.popleft()
        if cutoff > self.recent_since:
            self.recent_since = cutoff


class _Shard:
    __slots__ = ("entries", "lock")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.entries: dict[str, UsageEntry] = {}


class UsageCache:
    """Sharded map of principal id to UsageEntry."""

    def __init__(
        self,
        ttl: timedelta = DEFAULT_CACHE_TTL,
        shards: int = DEFAULT_SHARDS,
    ) -> None:
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._ttl = ttl
        self._shards = [_Shard() for _ in range(shards)]

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def _shard_for(self, principal_id: str) -> _Shard:
        index = zlib.crc32(principal_id.encode("utf-8")) % len(self._shards)
        return self._shards[index]

    @contextmanager
    def shard(self, principal_id: str) -> Iterator[dict[str, UsageEntry]]:
        """Lock the shard owning *principal_id* and yield its entry map."""
        shard = self._shard_for(principal_id)
        with shard.lock:
            yield shard.entries

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.entries)
        return total

    def discard(self, principal_id: str) -> None:
        with self.shard(principal_id) as entries:
            entries.pop(principal_id, None)

    def clear(self) -> None:
        for shard in self._shards:
            with shard.lock:
                shard.entries.clear()

    def evict_expired(self, now: datetime) -> int:
        """Drop entries untouched for longer than the TTL. Returns the count."""
        evicted = 0
        for shard in self._shards:
            with shard.lock:
                stale = [
                    pid for pid, entry in shard.entries.items()
                    if now - entry.touched_at >= self._ttl
                ]
                for pid in stale:
                    del shard.entries[pid]
                evicted += len(stale)
        return evicted
