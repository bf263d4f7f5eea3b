"""Usage tracking: write-through cache in front of the durable event log.

``record_usage`` updates the cached entry for the principal under its shard
lock and hands the durable append to a writer pool, so the new usage is
visible to the very next read even before the write lands. Before any
durable read for a principal, that principal's in-flight writes are
drained; a reload therefore always sees every event the cache has seen.
Reloads run outside the shard lock, one at a time per principal, so a slow
store never holds up principals that merely share a shard.

Durable reads run on a reader pool with a timeout. A timeout, like any
storage failure, surfaces as StoreUnavailableError so the rate limiter can
apply its failure policy.

Usage::

    tracker = UsageTracker(SqliteUsageStore(open_database("gate.db")))
    tracker.record_usage("org-42", weight=350, endpoint="gpt-api")
    used = tracker.get_monthly_usage("org-42")
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from functools import partial
from typing import Any, NamedTuple, TypeVar

from entitlement_gate.models import GateInputError, LimitResult, UsageRecord
from entitlement_gate.usage.cache import UsageCache, UsageEntry, UsageEvent
from entitlement_gate.usage.store import StoreUnavailableError, UsageStore
from entitlement_gate.usage.windows import (
    ensure_utc,
    hourly_window_start,
    month_start,
    next_month_start,
)

logger = logging.getLogger(__name__)

DEFAULT_STORE_TIMEOUT = 2.0
DEFAULT_ENDPOINT = "api"
RELOAD_ATTEMPTS = 3

T = TypeVar("T")


class UsageSnapshot(NamedTuple):
    """Usage for one principal read under a single lock acquisition."""

    now: datetime
    monthly: int
    hourly: int


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class _LoadSlot:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class UsageTracker:
    """Records usage events and answers window usage queries."""

    def __init__(
        self,
        store: UsageStore,
        cache: UsageCache | None = None,
        store_timeout: float = DEFAULT_STORE_TIMEOUT,
        writer_threads: int = 4,
        reader_threads: int = 4,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._cache = cache if cache is not None else UsageCache()
        self._timeout = store_timeout
        self._clock = _clock or _utc_now
        self._writer = ThreadPoolExecutor(
            max_workers=writer_threads, thread_name_prefix="usage-writer",
        )
        self._reader = ThreadPoolExecutor(
            max_workers=reader_threads, thread_name_prefix="usage-reader",
        )
        self._pending: dict[str, set[Future[None]]] = {}
        self._pending_lock = threading.Lock()
        self._write_failures = 0
        # Principals being reloaded, mapped to the writes seen since the
        # reload started. Each key is guarded by its shard lock.
        self._loading: dict[str, int] = {}
        self._load_guard = threading.Lock()
        self._load_slots: dict[str, _LoadSlot] = {}
        self._evict_lock = threading.Lock()
        self._last_eviction = self._now()

    @property
    def cache(self) -> UsageCache:
        return self._cache

    @property
    def store(self) -> UsageStore:
        return self._store

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    # --- Writes ---

    def record_usage(
        self,
        principal_id: str,
        weight: int = 1,
        endpoint: str = DEFAULT_ENDPOINT,
        timestamp: datetime | None = None,
    ) -> UsageRecord:
        """Append a usage event for *principal_id*.

        The cached counters are updated atomically before returning; the
        durable append completes asynchronously.
        """
        _validate(principal_id, weight)
        now = self._now()
        ts = ensure_utc(timestamp) if timestamp is not None else now
        record = _new_record(principal_id, weight, endpoint, ts)

        with self._cache.shard(principal_id) as entries:
            entry = entries.get(principal_id)
            if entry is not None:
                entry.add(ts, weight)
                entry.touched_at = now
            if principal_id in self._loading:
                self._loading[principal_id] += 1
            self._submit_write(record)

        self._maybe_evict(now)
        return record

    def reserve(
        self,
        principal_id: str,
        weight: int,
        decide: Callable[[UsageSnapshot], LimitResult],
        endpoint: str = DEFAULT_ENDPOINT,
    ) -> LimitResult:
        """Atomically check and record.

        *decide* sees a consistent snapshot; when its result allows the
        request, the usage is recorded inside the same critical section,
        so concurrent reservations can never overshoot a ceiling.
        """
        _validate(principal_id, weight)
        now = self._now()

        with self._locked_entry(principal_id, now) as entry:
            snapshot = UsageSnapshot(
                now=now,
                monthly=entry.monthly_total,
                hourly=entry.recent_sum(hourly_window_start(now)),
            )
            result = decide(snapshot)
            if result.allowed:
                entry.add(now, weight)
                self._submit_write(_new_record(principal_id, weight, endpoint, now))

        self._maybe_evict(now)
        return result

    def _submit_write(self, record: UsageRecord) -> None:
        future = self._writer.submit(self._store.append, record)
        with self._pending_lock:
            self._pending.setdefault(record.principal_id, set()).add(future)
        future.add_done_callback(partial(self._write_done, record))

    def _write_done(self, record: UsageRecord, future: Future[None]) -> None:
        with self._pending_lock:
            pending = self._pending.get(record.principal_id)
            if pending is not None:
                pending.discard(future)
                if not pending:
                    del self._pending[record.principal_id]
            exc = future.exception()
            if exc is not None:
                self._write_failures += 1

        if exc is not None:
            logger.error(
                "Failed to persist usage record %s for %s: %s",
                record.record_id, record.principal_id, exc,
            )

    # --- Reads ---

    def get_usage(
        self,
        principal_id: str,
        window_start: datetime,
        window_end: datetime | None = None,
    ) -> int:
        """Sum of weights with ``window_start <= timestamp < window_end``.

        The current calendar month and any window inside the trailing hour
        are served from the cache; other windows read durable storage.
        """
        _validate(principal_id, 0)
        now = self._now()
        start = ensure_utc(window_start)
        end = ensure_utc(window_end) if window_end is not None else None

        is_current_month = start == month_start(now) and end in (None, next_month_start(now))
        if not is_current_month and start < hourly_window_start(now):
            return self._durable_sum(principal_id, start, end)

        with self._locked_entry(principal_id, now) as entry:
            if is_current_month:
                total = entry.monthly_total
            else:
                total = entry.recent_sum(start, end)

        self._maybe_evict(now)
        return total

    def get_monthly_usage(self, principal_id: str, at: datetime | None = None) -> int:
        at = ensure_utc(at) if at is not None else self._now()
        return self.get_usage(principal_id, month_start(at), next_month_start(at))

    def get_hourly_usage(self, principal_id: str) -> int:
        """Usage in the sliding hour ending now."""
        return self.snapshot(principal_id).hourly

    def snapshot(self, principal_id: str) -> UsageSnapshot:
        """Monthly and hourly usage read under one lock acquisition."""
        _validate(principal_id, 0)
        now = self._now()
        with self._locked_entry(principal_id, now) as entry:
            snapshot = UsageSnapshot(
                now=now,
                monthly=entry.monthly_total,
                hourly=entry.recent_sum(hourly_window_start(now)),
            )
        self._maybe_evict(now)
        return snapshot

    @contextmanager
    def _locked_entry(self, principal_id: str, now: datetime) -> Iterator[UsageEntry]:
        """Yield a cache entry younger than the TTL with its shard lock held.

        A reload reads durable storage outside the shard lock, so a slow
        store only delays callers for the same principal. Writes recorded
        while the reload is in flight may be missing from what it read; the
        reload is then discarded and retried.
        """
        with self._cache.shard(principal_id) as entries:
            entry = _cached_entry(entries, principal_id, now, self._cache.ttl)
            if entry is not None:
                yield entry
                return

        with self._load_lock(principal_id):
            for _ in range(RELOAD_ATTEMPTS):
                with self._cache.shard(principal_id) as entries:
                    entry = _cached_entry(entries, principal_id, now, self._cache.ttl)
                    if entry is not None:
                        yield entry
                        return
                    self._loading[principal_id] = 0

                try:
                    loaded = self._load_entry(principal_id, now)
                except Exception:
                    with self._cache.shard(principal_id):
                        self._loading.pop(principal_id, None)
                    raise

                with self._cache.shard(principal_id) as entries:
                    if self._loading.pop(principal_id, 0) == 0:
                        entries[principal_id] = loaded
                        yield loaded
                        return
                logger.debug("Usage for %s changed during reload, retrying", principal_id)

            # Writes keep arriving; reload with the shard lock held.
            with self._cache.shard(principal_id) as entries:
                loaded = self._load_entry(principal_id, now)
                entries[principal_id] = loaded
                yield loaded

    @contextmanager
    def _load_lock(self, principal_id: str) -> Iterator[None]:
        """Serialize reloads of one principal."""
        with self._load_guard:
            slot = self._load_slots.get(principal_id)
            if slot is None:
                slot = self._load_slots[principal_id] = _LoadSlot()
            slot.users += 1
        try:
            with slot.lock:
                yield
        finally:
            with self._load_guard:
                slot.users -= 1
                if not slot.users:
                    del self._load_slots[principal_id]

    def _load_entry(self, principal_id: str, now: datetime) -> UsageEntry:
        self._drain(principal_id)
        start = month_start(now)
        end = next_month_start(now)
        recent_since = hourly_window_start(now)

        monthly = self._read(self._store.sum_weights, principal_id, start, end)
        records = self._read(self._store.fetch_records, principal_id, recent_since)
        logger.debug("Loaded usage for %s: monthly=%d recent=%d", principal_id, monthly, len(records))

        return UsageEntry(
            loaded_at=now,
            touched_at=now,
            month_start=start,
            month_end=end,
            monthly_total=monthly,
            recent_since=recent_since,
            recent=deque(UsageEvent(ensure_utc(r.timestamp), r.weight) for r in records),
        )

    def _durable_sum(self, principal_id: str, start: datetime, end: datetime | None) -> int:
        self._drain(principal_id)
        return self._read(self._store.sum_weights, principal_id, start, end)

    def _drain(self, principal_id: str) -> None:
        """Wait for in-flight writes of *principal_id* to land."""
        with self._pending_lock:
            futures = list(self._pending.get(principal_id, ()))
        if not futures:
            return
        _, not_done = wait(futures, timeout=self._timeout)
        if not_done:
            raise StoreUnavailableError(
                f"Timed out after {self._timeout}s waiting for "
                f"{len(not_done)} usage write(s) for '{principal_id}'"
            )

    def _read(self, fn: Callable[..., T], *args: Any) -> T:
        future = self._reader.submit(fn, *args)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeoutError as e:
            raise StoreUnavailableError(
                f"Usage store read timed out after {self._timeout}s"
            ) from e
        except StoreUnavailableError:
            raise
        except Exception as e:
            raise StoreUnavailableError(f"Usage store read failed: {e}") from e

    # --- Maintenance ---

    def _maybe_evict(self, now: datetime) -> None:
        if now - self._last_eviction < self._cache.ttl:
            return
        if not self._evict_lock.acquire(blocking=False):
            return
        try:
            self._last_eviction = now
            evicted = self._cache.evict_expired(now)
            if evicted:
                logger.debug("Evicted %d idle usage cache entries", evicted)
        finally:
            self._evict_lock.release()

    def flush(self, timeout: float | None = None) -> bool:
        """Wait for all in-flight writes. Returns False if any are still pending."""
        with self._pending_lock:
            futures = [f for pending in self._pending.values() for f in pending]
        if not futures:
            return True
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    def reset(self, principal_id: str) -> None:
        """Drop the cached entry; the next read reloads from durable storage."""
        self._cache.discard(principal_id)

    def stats(self) -> dict[str, int]:
        with self._pending_lock:
            pending = sum(len(p) for p in self._pending.values())
            failures = self._write_failures
        return {
            "cached_principals": len(self._cache),
            "pending_writes": pending,
            "write_failures": failures,
        }

    def close(self, timeout: float | None = None) -> None:
        self.flush(timeout)
        self._writer.shutdown(wait=True)
        self._reader.shutdown(wait=True)


def _validate(principal_id: str, weight: int) -> None:
    if not isinstance(principal_id, str) or not principal_id.strip():
        raise GateInputError("principal_id is required")
    if isinstance(weight, bool) or not isinstance(weight, int) or weight < 0:
        raise GateInputError(f"weight must be a non-negative integer, got {weight!r}")


def _new_record(
    principal_id: str, weight: int, endpoint: str, timestamp: datetime,
) -> UsageRecord:
    return UsageRecord(
        record_id=f"use-{uuid.uuid4().hex[:12]}",
        principal_id=principal_id,
        timestamp=timestamp,
        weight=weight,
        endpoint=endpoint,
    )


def _cached_entry(
    entries: dict[str, UsageEntry], principal_id: str, now: datetime, ttl: timedelta,
) -> UsageEntry | None:
    """Return the principal's entry if still fresh. Shard lock must be held."""
    entry = entries.get(principal_id)
    if entry is None or not entry.is_fresh(now, ttl):
        return None
    entry.prune(hourly_window_start(now))
    entry.touched_at = now
    return entry
