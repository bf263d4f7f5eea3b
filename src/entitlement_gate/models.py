"""Core data models for entitlement-gate.

Defines the schemas for:
- Plans (tier rank, feature flags, module allowlist, usage limits)
- Subscriptions (which plan a principal is currently on)
- Usage records (append-only metering events)
- Gate decisions (the audit fact written for every evaluation)
- Gate requests and verdicts (the contract with request handlers)
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class GateInputError(ValueError):
    """Raised for malformed gate input, such as a missing principal id."""


# --- Enums ---


class FeatureName(enum.StrEnum):
    CAN_USE_ALL_MODULES = "canUseAllModules"
    CAN_EXPORT_MD = "canExportMD"
    CAN_EXPORT_PDF = "canExportPDF"
    CAN_EXPORT_JSON = "canExportJSON"
    CAN_USE_GPT_TEST_REAL = "canUseGptTestReal"
    HAS_CLOUD_HISTORY = "hasCloudHistory"
    HAS_EVALUATOR_AI = "hasEvaluatorAI"
    HAS_API = "hasAPI"
    HAS_WHITE_LABEL = "hasWhiteLabel"
    CAN_EXPORT_BUNDLE_ZIP = "canExportBundleZip"
    HAS_SEATS_GT1 = "hasSeatsGT1"


class ExportFormat(enum.StrEnum):
    TXT = "txt"
    MD = "md"
    JSON = "json"
    PDF = "pdf"
    BUNDLE = "bundle"


class SubscriptionStatus(enum.StrEnum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    TRIALING = "trialing"


class GateKind(enum.StrEnum):
    ENTITLEMENT = "entitlement"
    QUOTA = "quota"


class ReasonCode(enum.StrEnum):
    ALLOWED = "Allowed"
    INSUFFICIENT_PLAN = "InsufficientPlan"
    QUOTA_EXCEEDED = "QuotaExceeded"
    RATE_LIMITED = "RateLimited"
    MISCONFIGURED = "Misconfigured"
    STORE_UNAVAILABLE = "StoreUnavailable"


class FailurePolicy(enum.StrEnum):
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


ALL_MODULES: Literal["ALL"] = "ALL"

ENTITLING_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


# --- Plan Schema ---


class UsageLimits(BaseModel):
    """Numeric ceilings attached to a plan."""

    model_config = ConfigDict(frozen=True)

    monthly_calls: int = Field(..., ge=0)
    hourly_calls: int = Field(..., ge=0)
    export_formats: frozenset[ExportFormat] = frozenset({ExportFormat.TXT})


class Plan(BaseModel):
    """A published subscription tier.

    Loaded from the catalog YAML (or the built-in default catalog).
    Immutable once constructed; ``tier_rank`` orders plans for hierarchy
    comparisons.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., pattern=r"^[a-z][a-z0-9_-]*$")
    label: str = ""
    tier_rank: int = Field(..., ge=0)
    feature_flags: dict[FeatureName, bool] = Field(default_factory=dict)
    module_allowlist: Literal["ALL"] | frozenset[str] = frozenset()
    usage_limits: UsageLimits
    retention_days: int = -1
    notes: str = ""

    def has_feature(self, feature: FeatureName) -> bool:
        return self.feature_flags.get(feature, False)

    def allows_module(self, module_id: str) -> bool:
        if self.module_allowlist == ALL_MODULES:
            return True
        return module_id in self.module_allowlist


# --- Subscription Schema ---


class Subscription(BaseModel):
    """The billing state of a principal, written by the billing collaborator."""

    principal_id: str
    plan_id: str
    status: SubscriptionStatus
    period_start: datetime
    period_end: datetime

    def is_entitling(self, at: datetime) -> bool:
        """True when the status grants access and *at* is inside the period."""
        return (
            self.status in ENTITLING_STATUSES
            and self.period_start <= at < self.period_end
        )


# --- Usage Schema ---


class UsageRecord(BaseModel):
    """A single metered usage event. Append-only."""

    record_id: str
    principal_id: str = Field(..., min_length=1)
    timestamp: datetime
    weight: int = Field(..., ge=0)
    endpoint: str = "api"


# --- Gate Decision (audit fact) ---


class GateDecision(BaseModel):
    """One evaluation by the entitlement evaluator or the rate limiter."""

    gate_id: str
    kind: GateKind
    passed: bool
    reason: ReasonCode
    principal_id: str
    plan_id: str
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class AuditEntry(GateDecision):
    """A gate decision as persisted in the hash-chained audit log."""

    prev_hash: str
    entry_hash: str = ""


# --- Evaluation results ---


class FeatureCheck(BaseModel):
    """Outcome of a static feature entitlement check."""

    feature: str
    allowed: bool
    reason: ReasonCode
    required_plan: str | None = None
    current_plan: str


class LimitResult(BaseModel):
    """Outcome of a quota check or reservation."""

    allowed: bool
    reason: ReasonCode
    remaining: int
    reset_time: datetime
    limit: int
    degraded: bool = False


# --- Gate contract ---


class GateRequest(BaseModel):
    """What a request handler presents to the gate."""

    principal_id: str = Field(..., min_length=1)
    plan_id: str | None = None
    feature: str | None = None
    module_id: str | None = None
    weight: int | None = Field(None, ge=0)
    endpoint: str = "api"


class GateVerdict(BaseModel):
    """The structured answer returned to the request handler."""

    allowed: bool
    reason_code: ReasonCode
    plan_id: str
    required_plan: str | None = None
    remaining: int | None = None
    reset_time: datetime | None = None
    limit: int | None = None
    degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
