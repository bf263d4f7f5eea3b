"""Read-only access to current subscription state.

Subscription rows are written by the billing collaborator; the gate only
reads them. A principal without an entitling subscription is on the
catalog's lowest tier, never an error.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from entitlement_gate.catalog.loader import PlanCatalog
from entitlement_gate.models import Subscription, SubscriptionStatus
from entitlement_gate.storage.database import Database
from entitlement_gate.usage.store import StoreUnavailableError
from entitlement_gate.usage.windows import db_timestamp, ensure_utc

logger = logging.getLogger(__name__)


@runtime_checkable
class SubscriptionStateStore(Protocol):
    """Protocol for subscription state backends."""

    def get_active_subscription(self, principal_id: str) -> Subscription | None: ...


class InMemorySubscriptionStore:
    """Dict-backed store. ``put`` is the write path for the billing collaborator."""

    def __init__(self, _clock: Callable[[], datetime] | None = None) -> None:
        self._history: dict[str, list[Subscription]] = {}
        self._lock = threading.Lock()
        self._clock = _clock or (lambda: datetime.now(tz=UTC))

    def put(self, subscription: Subscription) -> None:
        """Add a subscription record; it supersedes earlier ones for the principal."""
        with self._lock:
            self._history.setdefault(subscription.principal_id, []).append(subscription)

    def history(self, principal_id: str) -> list[Subscription]:
        with self._lock:
            return list(self._history.get(principal_id, []))

    def get_active_subscription(self, principal_id: str) -> Subscription | None:
        now = ensure_utc(self._clock())
        for sub in reversed(self.history(principal_id)):
            if _entitles(sub, now):
                return sub
        return None


class SqliteSubscriptionStore:
    """Reads the ``subscriptions`` table; the newest entitling row wins."""

    def __init__(
        self,
        db: Database,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._clock = _clock or (lambda: datetime.now(tz=UTC))

    def get_active_subscription(self, principal_id: str) -> Subscription | None:
        now = db_timestamp(self._clock())
        try:
            row = self._db.fetchone(
                "SELECT * FROM subscriptions "
                "WHERE principal_id = ? AND status IN (?, ?) "
                "AND period_start <= ? AND period_end > ? "
                "ORDER BY created_at DESC, id DESC LIMIT 1",
                (
                    principal_id,
                    SubscriptionStatus.ACTIVE.value,
                    SubscriptionStatus.TRIALING.value,
                    now,
                    now,
                ),
            )
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Failed to read subscription: {e}") from e

        if row is None:
            return None
        return Subscription(
            principal_id=row["principal_id"],
            plan_id=row["plan_id"],
            status=SubscriptionStatus(row["status"]),
            period_start=datetime.fromisoformat(row["period_start"]),
            period_end=datetime.fromisoformat(row["period_end"]),
        )


def insert_subscription(db: Database, subscription: Subscription) -> None:
    """Write a subscription row (the billing collaborator's path, and fixtures)."""
    db.write(
        "INSERT INTO subscriptions "
        "(principal_id, plan_id, status, period_start, period_end, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        (
            subscription.principal_id,
            subscription.plan_id,
            subscription.status.value,
            db_timestamp(subscription.period_start),
            db_timestamp(subscription.period_end),
            db_timestamp(datetime.now(tz=UTC)),
        ),
    )


class PlanResolver:
    """Maps a principal to the plan id the gate should evaluate against."""

    def __init__(self, store: SubscriptionStateStore, catalog: PlanCatalog) -> None:
        self._store = store
        self._catalog = catalog

    def resolve_plan_id(self, principal_id: str) -> str:
        fallback = self._catalog.lowest_plan().id
        try:
            subscription = self._store.get_active_subscription(principal_id)
        except StoreUnavailableError as exc:
            logger.warning(
                "Subscription store unavailable for %s, using '%s': %s",
                principal_id, fallback, exc,
            )
            return fallback

        if subscription is None:
            return fallback
        if subscription.plan_id not in self._catalog:
            logger.warning(
                "Subscription for %s names unknown plan '%s', using '%s'",
                principal_id, subscription.plan_id, fallback,
            )
            return fallback
        return subscription.plan_id


def _entitles(subscription: Subscription, now: datetime) -> bool:
    normalized = subscription.model_copy(
        update={
            "period_start": ensure_utc(subscription.period_start),
            "period_end": ensure_utc(subscription.period_end),
        }
    )
    return normalized.is_entitling(now)
