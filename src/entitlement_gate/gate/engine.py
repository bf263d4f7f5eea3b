"""Gate: the single evaluation point request handlers call.

Takes a gate request (principal, plan, feature, module, weight) and returns
a structured verdict. Evaluation:

1. Validate the request (missing principal -> GateInputError)
2. Resolve the plan: explicit plan id, else the principal's subscription,
   else the lowest tier
3. Feature entitlement (if a feature is named)
4. Module entitlement (if a module is named)
5. Quota: try_reserve when a weight is given, check_limit otherwise

The first denial wins. Business denials are verdicts, never exceptions.
"""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from entitlement_gate.entitlements.evaluator import EntitlementEvaluator
from entitlement_gate.models import (
    GateInputError,
    GateRequest,
    GateVerdict,
    ReasonCode,
)
from entitlement_gate.ratelimit.limiter import RateLimiter
from entitlement_gate.subscriptions.store import PlanResolver


class Gate:
    """Combines entitlement and quota checks into one verdict."""

    def __init__(
        self,
        evaluator: EntitlementEvaluator,
        limiter: RateLimiter,
        resolver: PlanResolver | None = None,
    ) -> None:
        self._evaluator = evaluator
        self._limiter = limiter
        self._resolver = resolver

    def check(self, **fields: Any) -> GateVerdict:
        """Build a GateRequest from keyword fields and evaluate it."""
        try:
            request = GateRequest(**fields)
        except ValidationError as e:
            raise GateInputError(f"Invalid gate request: {e}") from e
        return self.evaluate(request)

    def evaluate(self, request: GateRequest) -> GateVerdict:
        """Evaluate a gate request.

        Args:
            request: The validated request from a handler.

        Returns:
            A GateVerdict; ``allowed`` is False for any denial.
        """
        if not request.principal_id.strip():
            raise GateInputError("principal_id is required")

        plan_id = request.plan_id or self._resolve_plan(request.principal_id)
        catalog = self._evaluator.catalog

        if request.feature is not None:
            check = self._evaluator.check_feature(
                plan_id, request.feature, principal_id=request.principal_id,
            )
            if not check.allowed:
                return GateVerdict(
                    allowed=False,
                    reason_code=check.reason,
                    plan_id=plan_id,
                    required_plan=check.required_plan,
                )

        if request.module_id is not None:
            if not self._evaluator.can_access_module(
                plan_id, request.module_id, principal_id=request.principal_id,
            ):
                required = catalog.required_plan_for_module(request.module_id)
                reason = (
                    ReasonCode.INSUFFICIENT_PLAN if plan_id in catalog
                    else ReasonCode.MISCONFIGURED
                )
                return GateVerdict(
                    allowed=False,
                    reason_code=reason,
                    plan_id=plan_id,
                    required_plan=required.id if required is not None else None,
                )

        if request.weight is not None:
            result = self._limiter.try_reserve(
                request.principal_id, plan_id, request.weight, endpoint=request.endpoint,
            )
        else:
            result = self._limiter.check_limit(request.principal_id, plan_id)

        return GateVerdict(
            allowed=result.allowed,
            reason_code=result.reason,
            plan_id=plan_id,
            remaining=result.remaining,
            reset_time=result.reset_time,
            limit=result.limit,
            degraded=result.degraded,
        )

    def _resolve_plan(self, principal_id: str) -> str:
        if self._resolver is None:
            return self._evaluator.catalog.lowest_plan().id
        return self._resolver.resolve_plan_id(principal_id)
