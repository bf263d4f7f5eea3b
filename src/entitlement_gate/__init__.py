"""Entitlement-Gate: plan entitlements and usage-quota admission control."""

__version__ = "0.1.0"

from entitlement_gate.audit.logger import GateAuditLog, JsonlAuditSink, verify_log
from entitlement_gate.audit.sinks import MemoryAuditSink, SqliteAuditSink, WebhookAuditSink
from entitlement_gate.catalog.loader import CatalogError, PlanCatalog, default_catalog, load_catalog
from entitlement_gate.config import GateConfig, find_config, load_config
from entitlement_gate.entitlements.evaluator import EntitlementEvaluator
from entitlement_gate.gate.engine import Gate
from entitlement_gate.models import (
    ExportFormat,
    FailurePolicy,
    FeatureCheck,
    FeatureName,
    GateDecision,
    GateInputError,
    GateKind,
    GateRequest,
    GateVerdict,
    LimitResult,
    Plan,
    ReasonCode,
    Subscription,
    SubscriptionStatus,
    UsageLimits,
    UsageRecord,
)
from entitlement_gate.ratelimit.limiter import RateLimitConfig, RateLimiter
from entitlement_gate.sdk.client import EntitlementGate, GateError
from entitlement_gate.subscriptions.store import (
    InMemorySubscriptionStore,
    PlanResolver,
    SqliteSubscriptionStore,
)
from entitlement_gate.usage.store import StoreUnavailableError
from entitlement_gate.usage.tracker import UsageTracker

__all__ = [
    "CatalogError",
    "default_catalog",
    "EntitlementEvaluator",
    "EntitlementGate",
    "ExportFormat",
    "FailurePolicy",
    "FeatureCheck",
    "FeatureName",
    "find_config",
    "Gate",
    "GateAuditLog",
    "GateConfig",
    "GateDecision",
    "GateError",
    "GateInputError",
    "GateKind",
    "GateRequest",
    "GateVerdict",
    "InMemorySubscriptionStore",
    "JsonlAuditSink",
    "LimitResult",
    "load_catalog",
    "load_config",
    "MemoryAuditSink",
    "Plan",
    "PlanCatalog",
    "PlanResolver",
    "RateLimitConfig",
    "RateLimiter",
    "ReasonCode",
    "SqliteAuditSink",
    "SqliteSubscriptionStore",
    "StoreUnavailableError",
    "Subscription",
    "SubscriptionStatus",
    "UsageLimits",
    "UsageRecord",
    "UsageTracker",
    "verify_log",
    "WebhookAuditSink",
    "__version__",
]
