"""Per-principal quota admission control.

Composes the plan catalog (for ceilings) and the usage tracker (for counts)
into an allow/deny decision with remaining quota and reset time. Two
ceilings apply, checked in this order:

1. Monthly: calendar month in UTC. Denied as QuotaExceeded, resets at the
   first instant of next month.
2. Hourly: sliding 60 minutes ending now. Denied as RateLimited, resets
   one hour from now.

The monthly ceiling is checked first so a caller who has exhausted the
month is never told to retry in an hour.

Usage::

    limiter = RateLimiter(catalog, tracker, audit=audit_log)

    # Strict path: check and record in one critical section
    result = limiter.try_reserve("org-42", "pro", weight=1)

    # Two-step path: may overshoot under concurrency
    result = limiter.check_limit("org-42", "pro")
    if result.allowed:
        tracker.record_usage("org-42")
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from entitlement_gate.audit.logger import GateAuditLog, new_decision
from entitlement_gate.catalog.loader import PlanCatalog
from entitlement_gate.models import (
    FailurePolicy,
    GateInputError,
    GateKind,
    LimitResult,
    Plan,
    ReasonCode,
)
from entitlement_gate.usage.store import StoreUnavailableError
from entitlement_gate.usage.tracker import DEFAULT_ENDPOINT, UsageSnapshot, UsageTracker
from entitlement_gate.usage.windows import HOURLY_WINDOW, next_month_start

logger = logging.getLogger(__name__)


class RateLimitConfig(BaseModel):
    """Configuration for quota enforcement."""

    failure_policy: FailurePolicy = FailurePolicy.FAIL_OPEN
    """What to answer when durable storage cannot be consulted."""

    degraded_remaining: int = Field(1000, ge=0)
    """Remaining count reported on a fail-open answer."""


class RateLimiter:
    """Monthly + hourly quota limiter.

    Stateless apart from its collaborators; all counters live in the
    UsageTracker.
    """

    def __init__(
        self,
        catalog: PlanCatalog,
        tracker: UsageTracker,
        audit: GateAuditLog | None = None,
        config: RateLimitConfig | None = None,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._catalog = catalog
        self._tracker = tracker
        self._audit = audit
        self._config = config or RateLimitConfig()
        self._clock = _clock or (lambda: datetime.now(tz=UTC))

    @property
    def config(self) -> RateLimitConfig:
        """The rate limit configuration."""
        return self._config

    def check_limit(self, principal_id: str, plan_id: str) -> LimitResult:
        """Answer whether one more call fits, without recording anything."""
        _require_principal(principal_id)
        plan = self._catalog.get_plan(plan_id)
        if plan is None:
            return self._finish(principal_id, plan_id, self._misconfigured(plan_id), "check", 0)

        try:
            snapshot = self._tracker.snapshot(principal_id)
        except StoreUnavailableError as exc:
            result = self._degraded(principal_id, plan, exc)
        else:
            result = evaluate_limits(plan, snapshot, weight=1)
            if result.allowed:
                # Two-step mode reports the headroom before this call.
                result.remaining = plan.usage_limits.monthly_calls - snapshot.monthly

        return self._finish(principal_id, plan_id, result, "check", 0)

    def try_reserve(
        self,
        principal_id: str,
        plan_id: str,
        weight: int = 1,
        endpoint: str = DEFAULT_ENDPOINT,
    ) -> LimitResult:
        """Atomically admit and record *weight* units, or deny without recording."""
        _require_principal(principal_id)
        plan = self._catalog.get_plan(plan_id)
        if plan is None:
            return self._finish(principal_id, plan_id, self._misconfigured(plan_id), "reserve", weight)

        try:
            result = self._tracker.reserve(
                principal_id,
                weight,
                lambda snapshot: evaluate_limits(plan, snapshot, weight),
                endpoint=endpoint,
            )
        except StoreUnavailableError as exc:
            result = self._degraded(principal_id, plan, exc)
            if result.allowed:
                self._tracker.record_usage(principal_id, weight, endpoint)

        return self._finish(principal_id, plan_id, result, "reserve", weight)

    def _misconfigured(self, plan_id: str) -> LimitResult:
        logger.error("Quota check against unknown plan '%s'", plan_id)
        return LimitResult(
            allowed=False,
            reason=ReasonCode.MISCONFIGURED,
            remaining=0,
            reset_time=self._clock(),
            limit=0,
        )

    def _degraded(self, principal_id: str, plan: Plan, exc: Exception) -> LimitResult:
        now = self._clock()
        policy = self._config.failure_policy
        logger.warning(
            "Usage store unavailable for %s (plan %s), applying %s: %s",
            principal_id, plan.id, policy, exc,
        )
        if policy == FailurePolicy.FAIL_CLOSED:
            return LimitResult(
                allowed=False,
                reason=ReasonCode.STORE_UNAVAILABLE,
                remaining=0,
                reset_time=now,
                limit=plan.usage_limits.monthly_calls,
                degraded=True,
            )
        return LimitResult(
            allowed=True,
            reason=ReasonCode.STORE_UNAVAILABLE,
            remaining=self._config.degraded_remaining,
            reset_time=next_month_start(now),
            limit=plan.usage_limits.monthly_calls,
            degraded=True,
        )

    def _finish(
        self,
        principal_id: str,
        plan_id: str,
        result: LimitResult,
        mode: str,
        weight: int,
    ) -> LimitResult:
        if self._audit is not None:
            self._audit.record(
                new_decision(
                    GateKind.QUOTA,
                    passed=result.allowed,
                    reason=result.reason,
                    principal_id=principal_id,
                    plan_id=plan_id,
                    metadata={
                        "mode": mode,
                        "weight": weight,
                        "remaining": result.remaining,
                        "limit": result.limit,
                        "reset_time": result.reset_time.isoformat(),
                        "degraded": result.degraded,
                    },
                    timestamp=self._clock(),
                )
            )
        return result


def evaluate_limits(plan: Plan, snapshot: UsageSnapshot, weight: int) -> LimitResult:
    """Pure quota decision for *weight* more units against *snapshot*.

    At least one unit is always required, so a zero-weight request is
    still refused once a ceiling is reached.
    """
    needed = max(weight, 1)
    monthly_limit = plan.usage_limits.monthly_calls
    hourly_limit = plan.usage_limits.hourly_calls

    if snapshot.monthly + needed > monthly_limit:
        return LimitResult(
            allowed=False,
            reason=ReasonCode.QUOTA_EXCEEDED,
            remaining=max(monthly_limit - snapshot.monthly, 0),
            reset_time=next_month_start(snapshot.now),
            limit=monthly_limit,
        )

    if snapshot.hourly + needed > hourly_limit:
        return LimitResult(
            allowed=False,
            reason=ReasonCode.RATE_LIMITED,
            remaining=0,
            reset_time=snapshot.now + HOURLY_WINDOW,
            limit=hourly_limit,
        )

    return LimitResult(
        allowed=True,
        reason=ReasonCode.ALLOWED,
        remaining=monthly_limit - snapshot.monthly - weight,
        reset_time=next_month_start(snapshot.now),
        limit=monthly_limit,
    )


def _require_principal(principal_id: str) -> None:
    if not isinstance(principal_id, str) or not principal_id.strip():
        raise GateInputError("principal_id is required")
