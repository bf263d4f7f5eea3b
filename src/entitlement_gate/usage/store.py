"""Durable usage event storage.

The store is the single source of truth for usage. It is append-only:
records are never updated or deleted here (retention is handled outside
the gate).
"""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime
from typing import Protocol, runtime_checkable

from entitlement_gate.models import UsageRecord
from entitlement_gate.storage.database import Database
from entitlement_gate.usage.windows import db_timestamp, ensure_utc


class StoreUnavailableError(Exception):
    """Raised when durable storage cannot be read or written."""


@runtime_checkable
class UsageStore(Protocol):
    """Protocol for usage event storage backends.

    ``end`` bounds are exclusive; ``None`` means unbounded.
    """

    def append(self, record: UsageRecord) -> None: ...

    def sum_weights(
        self, principal_id: str, start: datetime, end: datetime | None = None,
    ) -> int: ...

    def fetch_records(
        self, principal_id: str, start: datetime, end: datetime | None = None,
    ) -> list[UsageRecord]: ...


class SqliteUsageStore:
    """Usage events in the ``usage_events`` table of the gate database."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def append(self, record: UsageRecord) -> None:
        try:
            self._db.write(
                "INSERT INTO usage_events "
                "(record_id, principal_id, event_timestamp, weight, endpoint) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    record.record_id,
                    record.principal_id,
                    db_timestamp(record.timestamp),
                    record.weight,
                    record.endpoint,
                ),
            )
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Failed to append usage event: {e}") from e

    def sum_weights(
        self, principal_id: str, start: datetime, end: datetime | None = None,
    ) -> int:
        sql, params = self._range_query("COALESCE(SUM(weight), 0) AS total", principal_id, start, end)
        try:
            row = self._db.fetchone(sql, params)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Failed to sum usage: {e}") from e
        return int(row["total"]) if row else 0

    def fetch_records(
        self, principal_id: str, start: datetime, end: datetime | None = None,
    ) -> list[UsageRecord]:
        sql, params = self._range_query("*", principal_id, start, end)
        try:
            rows = self._db.fetchall(sql + " ORDER BY event_timestamp", params)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Failed to read usage events: {e}") from e
        return [
            UsageRecord(
                record_id=row["record_id"],
                principal_id=row["principal_id"],
                timestamp=datetime.fromisoformat(row["event_timestamp"]),
                weight=row["weight"],
                endpoint=row["endpoint"],
            )
            for row in rows
        ]

    @staticmethod
    def _range_query(
        columns: str, principal_id: str, start: datetime, end: datetime | None,
    ) -> tuple[str, tuple]:
        sql = (
            f"SELECT {columns} FROM usage_events "  # noqa: S608
            "WHERE principal_id = ? AND event_timestamp >= ?"
        )
        params: tuple = (principal_id, db_timestamp(start))
        if end is not None:
            sql += " AND event_timestamp < ?"
            params = (*params, db_timestamp(end))
        return sql, params


class MemoryUsageStore:
    """In-process usage store for single-process deployments and tests."""

    def __init__(self) -> None:
        self._records: list[UsageRecord] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def append(self, record: UsageRecord) -> None:
        with self._lock:
            self._records.append(record)

    def sum_weights(
        self, principal_id: str, start: datetime, end: datetime | None = None,
    ) -> int:
        return sum(r.weight for r in self.fetch_records(principal_id, start, end))

    def fetch_records(
        self, principal_id: str, start: datetime, end: datetime | None = None,
    ) -> list[UsageRecord]:
        start = ensure_utc(start)
        end = ensure_utc(end) if end is not None else None
        with self._lock:
            matched = [
                r for r in self._records
                if r.principal_id == principal_id
                and ensure_utc(r.timestamp) >= start
                and (end is None or ensure_utc(r.timestamp) < end)
            ]
        return sorted(matched, key=lambda r: ensure_utc(r.timestamp))
