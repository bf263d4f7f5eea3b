"""Tests for the combined gate: entitlement checks, then quota."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from entitlement_gate.audit.logger import GateAuditLog
from entitlement_gate.audit.sinks import MemoryAuditSink
from entitlement_gate.catalog.loader import PlanCatalog
from entitlement_gate.entitlements.evaluator import EntitlementEvaluator
from entitlement_gate.gate.engine import Gate
from entitlement_gate.models import (
    GateInputError,
    GateKind,
    GateRequest,
    ReasonCode,
    Subscription,
    SubscriptionStatus,
)
from entitlement_gate.ratelimit.limiter import RateLimiter
from entitlement_gate.subscriptions.store import InMemorySubscriptionStore, PlanResolver
from entitlement_gate.usage.tracker import UsageTracker


@pytest.fixture()
def subscriptions(clock) -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore(_clock=clock)


@pytest.fixture()
def gate(
    catalog: PlanCatalog,
    tracker: UsageTracker,
    audit: GateAuditLog,
    subscriptions: InMemorySubscriptionStore,
    clock,
) -> Gate:
    return Gate(
        EntitlementEvaluator(catalog, audit=audit),
        RateLimiter(catalog, tracker, audit=audit, _clock=clock),
        resolver=PlanResolver(subscriptions, catalog),
    )


class TestEntitlementStage:
    def test_feature_denied(self, gate: Gate, tracker: UsageTracker):
        verdict = gate.check(principal_id="org-1", plan_id="free", feature="canExportPDF", weight=1)
        assert not verdict.allowed
        assert verdict.reason_code == ReasonCode.INSUFFICIENT_PLAN
        assert verdict.required_plan == "pro"
        assert verdict.remaining is None
        assert tracker.get_monthly_usage("org-1") == 0

    def test_module_denied(self, gate: Gate):
        verdict = gate.check(principal_id="org-1", plan_id="free", module_id="M07")
        assert not verdict.allowed
        assert verdict.reason_code == ReasonCode.INSUFFICIENT_PLAN
        assert verdict.required_plan == "creator"

    def test_unknown_plan_module_is_misconfigured(self, gate: Gate):
        verdict = gate.check(principal_id="org-1", plan_id="platinum", module_id="M01")
        assert verdict.reason_code == ReasonCode.MISCONFIGURED

    def test_unknown_feature_is_misconfigured(self, gate: Gate):
        verdict = gate.check(principal_id="org-1", plan_id="pro", feature="canTimeTravel")
        assert not verdict.allowed
        assert verdict.reason_code == ReasonCode.MISCONFIGURED


class TestQuotaStage:
    def test_allowed_reserves(self, gate: Gate, tracker: UsageTracker):
        verdict = gate.check(
            principal_id="org-1", plan_id="pro", feature="canExportPDF", module_id="M40", weight=3,
        )
        assert verdict.allowed
        assert verdict.reason_code == ReasonCode.ALLOWED
        assert verdict.remaining == 4997
        assert verdict.limit == 5000
        assert verdict.reset_time == datetime(2025, 7, 1, tzinfo=UTC)
        assert tracker.get_monthly_usage("org-1") == 3

    def test_without_weight_only_checks(self, gate: Gate, tracker: UsageTracker):
        verdict = gate.check(principal_id="org-1", plan_id="pro")
        assert verdict.allowed
        assert verdict.remaining == 5000
        assert tracker.get_monthly_usage("org-1") == 0

    def test_hourly_limit(self, gate: Gate):
        for _ in range(5):
            assert gate.check(principal_id="org-1", plan_id="free", weight=1).allowed
        verdict = gate.check(principal_id="org-1", plan_id="free", weight=1)
        assert verdict.reason_code == ReasonCode.RATE_LIMITED


class TestPlanResolution:
    def test_plan_from_subscription(self, gate: Gate, subscriptions: InMemorySubscriptionStore):
        subscriptions.put(
            Subscription(
                principal_id="org-1",
                plan_id="pro",
                status=SubscriptionStatus.ACTIVE,
                period_start=datetime(2025, 6, 1, tzinfo=UTC),
                period_end=datetime(2025, 7, 1, tzinfo=UTC),
            )
        )
        verdict = gate.check(principal_id="org-1", feature="canExportPDF")
        assert verdict.allowed
        assert verdict.plan_id == "pro"

    def test_no_subscription_is_free(self, gate: Gate):
        verdict = gate.check(principal_id="org-9", feature="canExportMD")
        assert not verdict.allowed
        assert verdict.plan_id == "free"

    def test_without_resolver_uses_lowest(self, catalog: PlanCatalog, tracker: UsageTracker):
        gate = Gate(EntitlementEvaluator(catalog), RateLimiter(catalog, tracker))
        assert gate.check(principal_id="org-1").plan_id == "free"


class TestInput:
    def test_missing_principal(self, gate: Gate):
        with pytest.raises(GateInputError):
            gate.check(principal_id="")

    def test_blank_principal(self, gate: Gate):
        with pytest.raises(GateInputError):
            gate.evaluate(GateRequest(principal_id="   "))

    def test_negative_weight(self, gate: Gate):
        with pytest.raises(GateInputError):
            gate.check(principal_id="org-1", weight=-1)


class TestAuditTrail:
    def test_each_stage_audited(self, gate: Gate, memory_sink: MemoryAuditSink):
        gate.check(principal_id="org-1", plan_id="pro", feature="canExportPDF", module_id="M02", weight=1)
        kinds = [d.kind for d in memory_sink.decisions(principal_id="org-1")]
        assert kinds == [GateKind.ENTITLEMENT, GateKind.ENTITLEMENT, GateKind.QUOTA]
