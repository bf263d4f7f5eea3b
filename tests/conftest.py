"""Shared fixtures: a controllable clock, the built-in catalog, trackers."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from entitlement_gate.audit.logger import GateAuditLog
from entitlement_gate.audit.sinks import MemoryAuditSink
from entitlement_gate.catalog.loader import PlanCatalog, default_catalog
from entitlement_gate.storage.database import Database, open_database
from entitlement_gate.usage.store import MemoryUsageStore
from entitlement_gate.usage.tracker import UsageTracker

# --- Mock clock for deterministic tests ---


class MockClock:
    """A controllable clock for testing time-dependent behavior."""

    def __init__(self, start: datetime = datetime(2025, 6, 15, 12, 0, tzinfo=UTC)) -> None:
        self._now = start

    def __call__(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)

    def set(self, when: datetime) -> None:
        self._now = when


@pytest.fixture()
def clock() -> MockClock:
    return MockClock()


@pytest.fixture()
def catalog() -> PlanCatalog:
    return default_catalog()


@pytest.fixture()
def memory_sink() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture()
def audit(memory_sink: MemoryAuditSink) -> GateAuditLog:
    return GateAuditLog([memory_sink])


@pytest.fixture()
def usage_store() -> MemoryUsageStore:
    return MemoryUsageStore()


@pytest.fixture()
def tracker(usage_store: MemoryUsageStore, clock: MockClock) -> Iterator[UsageTracker]:
    t = UsageTracker(usage_store, _clock=clock)
    yield t
    t.close()


@pytest.fixture()
def db(tmp_path: Path) -> Iterator[Database]:
    d = open_database(tmp_path / "gate.db")
    yield d
    d.close()
