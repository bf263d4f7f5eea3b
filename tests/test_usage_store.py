"""Tests for durable usage stores."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from entitlement_gate.models import UsageRecord
from entitlement_gate.storage.database import Database
from entitlement_gate.usage.store import (
    MemoryUsageStore,
    SqliteUsageStore,
    StoreUnavailableError,
    UsageStore,
)

T0 = datetime(2025, 6, 15, 12, 0, tzinfo=UTC)


def _record(n: int, principal: str = "org-1", weight: int = 1, offset: int = 0) -> UsageRecord:
    return UsageRecord(
        record_id=f"use-{principal}-{n}",
        principal_id=principal,
        timestamp=T0 + timedelta(minutes=offset),
        weight=weight,
        endpoint="api",
    )


@pytest.fixture(params=["memory", "sqlite"])
def store(request, db: Database) -> UsageStore:
    if request.param == "memory":
        return MemoryUsageStore()
    return SqliteUsageStore(db)


class TestUsageStore:
    def test_protocol(self, store: UsageStore):
        assert isinstance(store, UsageStore)

    def test_sum_and_fetch(self, store: UsageStore):
        store.append(_record(1, weight=2, offset=0))
        store.append(_record(2, weight=3, offset=10))
        store.append(_record(3, principal="org-2", weight=50))

        assert store.sum_weights("org-1", T0) == 5
        assert store.sum_weights("org-2", T0) == 50
        assert store.sum_weights("org-3", T0) == 0
        assert [r.weight for r in store.fetch_records("org-1", T0)] == [2, 3]

    def test_end_is_exclusive(self, store: UsageStore):
        store.append(_record(1, offset=0))
        store.append(_record(2, offset=10))
        assert store.sum_weights("org-1", T0, T0 + timedelta(minutes=10)) == 1

    def test_start_is_inclusive(self, store: UsageStore):
        store.append(_record(1, offset=0))
        assert store.sum_weights("org-1", T0) == 1
        assert store.sum_weights("org-1", T0 + timedelta(microseconds=1)) == 0

    def test_fetch_ordered_by_time(self, store: UsageStore):
        store.append(_record(1, offset=20))
        store.append(_record(2, offset=5))
        records = store.fetch_records("org-1", T0)
        assert [r.record_id for r in records] == ["use-org-1-2", "use-org-1-1"]
        assert records[0].timestamp == T0 + timedelta(minutes=5)


class TestSqliteFailures:
    def test_missing_schema_is_unavailable(self, tmp_path: Path):
        store = SqliteUsageStore(Database(tmp_path / "bare.db"))
        with pytest.raises(StoreUnavailableError):
            store.sum_weights("org-1", T0)
        with pytest.raises(StoreUnavailableError):
            store.append(_record(1))

    def test_duplicate_record_id(self, db: Database):
        store = SqliteUsageStore(db)
        store.append(_record(1))
        with pytest.raises(StoreUnavailableError):
            store.append(_record(1))


class TestMemoryStore:
    def test_len(self):
        store = MemoryUsageStore()
        store.append(_record(1))
        assert len(store) == 1
