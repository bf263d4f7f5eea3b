"""EntitlementGate SDK: the single public entry point.

Wires together every internal component (catalog, usage tracker, rate
limiter, entitlement evaluator, subscription resolver, audit log) behind
one object. Construct one per process and pass it to request handlers;
nothing here is a global singleton, so tests can build their own with
fakes.

Usage::

    from entitlement_gate import EntitlementGate

    gate = EntitlementGate(database="./gate.db", audit_log="./audit.jsonl")
    verdict = gate.check(
        principal_id="org-42",
        feature="canExportPDF",
        weight=1,
    )
    if not verdict.allowed:
        ...
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from entitlement_gate.audit.logger import GateAuditLog, JsonlAuditSink
from entitlement_gate.audit.sinks import AuditSink, build_sinks
from entitlement_gate.catalog.loader import PlanCatalog, default_catalog, load_catalog
from entitlement_gate.config import GateConfig, load_config
from entitlement_gate.entitlements.evaluator import EntitlementEvaluator
from entitlement_gate.gate.engine import Gate
from entitlement_gate.models import (
    ExportFormat,
    FeatureCheck,
    FeatureName,
    GateVerdict,
    UsageRecord,
)
from entitlement_gate.ratelimit.limiter import RateLimitConfig, RateLimiter
from entitlement_gate.storage.database import Database, open_database
from entitlement_gate.subscriptions.store import (
    InMemorySubscriptionStore,
    PlanResolver,
    SqliteSubscriptionStore,
    SubscriptionStateStore,
)
from entitlement_gate.usage.cache import UsageCache
from entitlement_gate.usage.store import MemoryUsageStore, SqliteUsageStore, UsageStore
from entitlement_gate.usage.tracker import DEFAULT_ENDPOINT, UsageTracker
from entitlement_gate.usage.windows import next_month_start


class GateError(Exception):
    """Raised for configuration or initialization errors."""


class EntitlementGate:
    """Public API for entitlement-gate."""

    def __init__(
        self,
        catalog: PlanCatalog | str | Path | None = None,
        database: str | Path | None = None,
        audit_log: str | Path | None = None,
        audit_sinks: list[AuditSink] | dict | None = None,
        hourly_limits: dict[str, int] | None = None,
        rate_limit: RateLimitConfig | dict | None = None,
        subscriptions: SubscriptionStateStore | None = None,
        usage_store: UsageStore | None = None,
        cache_ttl_seconds: float = 300.0,
        store_timeout_seconds: float = 2.0,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize EntitlementGate.

        Args:
            catalog: A PlanCatalog, or a path to a catalog YAML file.
                Defaults to the built-in four-tier catalog.
            database: Path to the SQLite database holding usage events,
                subscriptions and (optionally) audit decisions. Without it,
                usage and subscriptions are kept in memory.
            audit_log: Path to the hash-chained JSONL audit log (optional).
            audit_sinks: Additional audit sinks. Pass a list of sink
                instances, or a dict to auto-build via ``build_sinks()``.
            hourly_limits: Per-plan hourly ceilings overriding the catalog.
            rate_limit: RateLimitConfig instance or dict (failure policy,
                degraded remaining count).
            subscriptions: Subscription state store override.
            usage_store: Usage store override.
            cache_ttl_seconds: Usage cache entry lifetime (default 5 minutes).
            store_timeout_seconds: Timeout for durable storage calls.
        """
        self._catalog = self._build_catalog(catalog, hourly_limits)

        self._db: Database | None = None
        if database is not None:
            self._db = open_database(database, timeout=store_timeout_seconds)

        if usage_store is None:
            usage_store = SqliteUsageStore(self._db) if self._db else MemoryUsageStore()
        if subscriptions is None:
            if self._db is not None:
                subscriptions = SqliteSubscriptionStore(self._db, _clock=_clock)
            else:
                subscriptions = InMemorySubscriptionStore(_clock=_clock)
        self._subscriptions = subscriptions

        sinks: list[AuditSink] = []
        if audit_log is not None:
            sinks.append(JsonlAuditSink(Path(audit_log)))
        if isinstance(audit_sinks, dict):
            try:
                sinks.extend(build_sinks(audit_sinks, db=self._db))
            except ValueError as e:
                raise GateError(str(e)) from e
        elif audit_sinks is not None:
            sinks.extend(audit_sinks)
        self._audit = GateAuditLog(sinks)

        if isinstance(rate_limit, dict):
            rate_limit = RateLimitConfig(**rate_limit)

        self._tracker = UsageTracker(
            usage_store,
            cache=UsageCache(ttl=timedelta(seconds=cache_ttl_seconds)),
            store_timeout=store_timeout_seconds,
            _clock=_clock,
        )
        self._evaluator = EntitlementEvaluator(self._catalog, audit=self._audit, _clock=_clock)
        self._limiter = RateLimiter(
            self._catalog, self._tracker, audit=self._audit, config=rate_limit, _clock=_clock,
        )
        self._resolver = PlanResolver(self._subscriptions, self._catalog)
        self._gate = Gate(self._evaluator, self._limiter, resolver=self._resolver)

    @classmethod
    def from_config(
        cls,
        config: GateConfig | str | Path | None = None,
        **overrides: Any,
    ) -> EntitlementGate:
        """Build from an ``entitlement-gate.yaml`` (auto-discovered if omitted)."""
        if not isinstance(config, GateConfig):
            config = load_config(config)
        kwargs: dict[str, Any] = {
            "catalog": config.catalog,
            "database": config.database,
            "audit_log": config.audit_log,
            "audit_sinks": config.audit_sinks,
            "hourly_limits": config.hourly_limits,
            "rate_limit": config.rate_limit,
            "cache_ttl_seconds": config.cache_ttl_seconds,
            "store_timeout_seconds": config.store_timeout_seconds,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    @staticmethod
    def _build_catalog(
        catalog: PlanCatalog | str | Path | None,
        hourly_limits: dict[str, int] | None,
    ) -> PlanCatalog:
        if catalog is None:
            built = default_catalog()
        elif isinstance(catalog, PlanCatalog):
            built = catalog
        else:
            built = load_catalog(catalog)
        if hourly_limits:
            built = built.with_hourly_limits(hourly_limits)
        return built

    # --- Components ---

    @property
    def catalog(self) -> PlanCatalog:
        return self._catalog

    @property
    def tracker(self) -> UsageTracker:
        return self._tracker

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def evaluator(self) -> EntitlementEvaluator:
        return self._evaluator

    @property
    def audit(self) -> GateAuditLog:
        return self._audit

    @property
    def subscriptions(self) -> SubscriptionStateStore:
        return self._subscriptions

    @property
    def database(self) -> Database | None:
        return self._db

    # --- Evaluation ---

    def check(
        self,
        principal_id: str,
        plan_id: str | None = None,
        feature: FeatureName | str | None = None,
        module_id: str | None = None,
        weight: int | None = None,
        endpoint: str = DEFAULT_ENDPOINT,
    ) -> GateVerdict:
        """Evaluate a full gate request and return the verdict."""
        return self._gate.check(
            principal_id=principal_id,
            plan_id=plan_id,
            feature=feature,
            module_id=module_id,
            weight=weight,
            endpoint=endpoint,
        )

    def resolve_plan(self, principal_id: str) -> str:
        return self._resolver.resolve_plan_id(principal_id)

    def check_feature(
        self,
        principal_id: str,
        feature: FeatureName | str,
        plan_id: str | None = None,
    ) -> FeatureCheck:
        plan_id = plan_id or self.resolve_plan(principal_id)
        return self._evaluator.check_feature(plan_id, feature, principal_id=principal_id)

    def can_access_module(
        self, principal_id: str, module_id: str, plan_id: str | None = None,
    ) -> bool:
        plan_id = plan_id or self.resolve_plan(principal_id)
        return self._evaluator.can_access_module(plan_id, module_id, principal_id=principal_id)

    def can_export(
        self, principal_id: str, fmt: ExportFormat | str, plan_id: str | None = None,
    ) -> bool:
        plan_id = plan_id or self.resolve_plan(principal_id)
        return self._evaluator.can_export(plan_id, fmt, principal_id=principal_id)

    def record_usage(
        self, principal_id: str, weight: int = 1, endpoint: str = DEFAULT_ENDPOINT,
    ) -> UsageRecord:
        """Record usage outside the reserve path (two-step mode)."""
        return self._tracker.record_usage(principal_id, weight, endpoint)

    def usage_summary(self, principal_id: str, plan_id: str | None = None) -> dict[str, Any]:
        """Current usage against the plan's ceilings.

        Raises StoreUnavailableError if durable storage cannot be read.
        """
        plan_id = plan_id or self.resolve_plan(principal_id)
        plan = self._catalog.get_or_raise(plan_id)
        snapshot = self._tracker.snapshot(principal_id)
        limits = plan.usage_limits
        return {
            "principal_id": principal_id,
            "plan_id": plan.id,
            "monthly_usage": snapshot.monthly,
            "monthly_limit": limits.monthly_calls,
            "hourly_usage": snapshot.hourly,
            "hourly_limit": limits.hourly_calls,
            "remaining": max(limits.monthly_calls - snapshot.monthly, 0),
            "reset_time": next_month_start(snapshot.now).isoformat(),
            "export_formats": sorted(f.value for f in limits.export_formats),
        }

    # --- Lifecycle ---

    def close(self) -> None:
        """Flush pending usage writes and release resources."""
        self._tracker.close()
        self._audit.close()
        if self._db is not None:
            self._db.close()

    def __enter__(self) -> EntitlementGate:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
