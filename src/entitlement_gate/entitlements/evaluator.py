"""Static entitlement evaluation: does a plan permit a feature or module?

Evaluation of a feature:
1. Resolve the feature name (unknown name -> Misconfigured)
2. Find the required plan: the lowest tier that enables the feature
3. Resolve the current plan (unknown plan -> Misconfigured)
4. Allow iff rank(current) >= rank(required)

Callers never see an exception for an unknown plan or feature; they get a
denial with reason Misconfigured, which is logged at ERROR level for
operator attention. Every outcome is recorded in the gate audit log
before it is returned.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from entitlement_gate.audit.logger import GateAuditLog, new_decision
from entitlement_gate.catalog.loader import PlanCatalog
from entitlement_gate.models import (
    ExportFormat,
    FeatureCheck,
    FeatureName,
    GateKind,
    ReasonCode,
)

logger = logging.getLogger(__name__)

ANONYMOUS = "anonymous"


class EntitlementEvaluator:
    """Evaluates plan entitlements against the catalog.

    Holds no state between calls besides its collaborators.
    """

    def __init__(
        self,
        catalog: PlanCatalog,
        audit: GateAuditLog | None = None,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._catalog = catalog
        self._audit = audit
        self._clock = _clock or (lambda: datetime.now(tz=UTC))

    @property
    def catalog(self) -> PlanCatalog:
        return self._catalog

    def check_feature(
        self,
        plan_id: str,
        feature: FeatureName | str,
        principal_id: str | None = None,
    ) -> FeatureCheck:
        """Decide whether *plan_id* is entitled to *feature*."""
        feature_name = _parse_feature(feature)
        if feature_name is None:
            logger.error("Entitlement check for unknown feature '%s' (plan %s)", feature, plan_id)
            result = FeatureCheck(
                feature=str(feature),
                allowed=False,
                reason=ReasonCode.MISCONFIGURED,
                current_plan=plan_id,
            )
            return self._record(result, principal_id, {"feature": str(feature)})

        required = self._catalog.required_plan_for(feature_name)
        required_id = required.id if required is not None else None
        current = self._catalog.get_plan(plan_id)

        if current is None:
            logger.error("Entitlement check against unknown plan '%s'", plan_id)
            reason = ReasonCode.MISCONFIGURED
            allowed = False
        elif required is None:
            logger.error("Feature '%s' is not enabled on any plan", feature_name)
            reason = ReasonCode.MISCONFIGURED
            allowed = False
        elif self._catalog.compare_tier(current, required) >= 0:
            reason = ReasonCode.ALLOWED
            allowed = True
        else:
            reason = ReasonCode.INSUFFICIENT_PLAN
            allowed = False

        result = FeatureCheck(
            feature=feature_name.value,
            allowed=allowed,
            reason=reason,
            required_plan=required_id,
            current_plan=plan_id,
        )
        return self._record(
            result, principal_id, {"feature": feature_name.value, "required_plan": required_id},
        )

    def can_access_module(
        self,
        plan_id: str,
        module_id: str,
        principal_id: str | None = None,
    ) -> bool:
        """True if the plan's module allowlist is ALL or contains *module_id*."""
        plan = self._catalog.get_plan(plan_id)
        if plan is None:
            logger.error("Module check against unknown plan '%s'", plan_id)
            reason = ReasonCode.MISCONFIGURED
            allowed = False
        else:
            allowed = plan.allows_module(module_id)
            reason = ReasonCode.ALLOWED if allowed else ReasonCode.INSUFFICIENT_PLAN

        required = self._catalog.required_plan_for_module(module_id)
        self._write(
            allowed,
            reason,
            plan_id,
            principal_id,
            {"module_id": module_id, "required_plan": required.id if required else None},
        )
        return allowed

    def can_export(
        self,
        plan_id: str,
        fmt: ExportFormat | str,
        principal_id: str | None = None,
    ) -> bool:
        """True if *fmt* is among the plan's allowed export formats."""
        try:
            export_format = ExportFormat(fmt)
        except ValueError:
            logger.error("Export check for unknown format '%s' (plan %s)", fmt, plan_id)
            self._write(False, ReasonCode.MISCONFIGURED, plan_id, principal_id, {"format": str(fmt)})
            return False

        if plan_id not in self._catalog:
            logger.error("Export check against unknown plan '%s'", plan_id)
            reason = ReasonCode.MISCONFIGURED
            allowed = False
        else:
            allowed = export_format in self._catalog.export_formats(plan_id)
            reason = ReasonCode.ALLOWED if allowed else ReasonCode.INSUFFICIENT_PLAN

        self._write(allowed, reason, plan_id, principal_id, {"format": export_format.value})
        return allowed

    def available_features(self, plan_id: str) -> list[FeatureName]:
        """Features enabled on *plan_id*; empty for unknown plans."""
        plan = self._catalog.get_plan(plan_id)
        if plan is None:
            return []
        return [f for f in FeatureName if plan.has_feature(f)]

    def _record(
        self, result: FeatureCheck, principal_id: str | None, metadata: dict[str, Any],
    ) -> FeatureCheck:
        self._write(result.allowed, result.reason, result.current_plan, principal_id, metadata)
        return result

    def _write(
        self,
        allowed: bool,
        reason: ReasonCode,
        plan_id: str,
        principal_id: str | None,
        metadata: dict[str, Any],
    ) -> None:
        if self._audit is None:
            return
        self._audit.record(
            new_decision(
                GateKind.ENTITLEMENT,
                passed=allowed,
                reason=reason,
                principal_id=principal_id or ANONYMOUS,
                plan_id=plan_id,
                metadata=metadata,
                timestamp=self._clock(),
            )
        )


def _parse_feature(feature: FeatureName | str) -> FeatureName | None:
    if isinstance(feature, FeatureName):
        return feature
    try:
        return FeatureName(feature)
    except ValueError:
        return None
