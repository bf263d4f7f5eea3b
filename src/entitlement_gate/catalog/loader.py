"""Plan Catalog: loads, validates, and serves plan definitions.

The catalog is the versioned table of subscription tiers. Plans are loaded
from a YAML file (or the built-in default table) and validated as a whole
on construction:

- plan ids are unique
- tier ranks are unique, so ranks impose a total order
- feature flags are monotonic: a flag enabled on a lower tier is enabled
  on every higher tier

A catalog that violates any of these is a configuration error and is
rejected with CatalogError.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from entitlement_gate.models import ExportFormat, FeatureName, Plan, UsageLimits


class CatalogError(Exception):
    """Raised when the plan catalog cannot be loaded or is inconsistent."""


class PlanCatalog:
    """Immutable, rank-ordered collection of plans."""

    def __init__(
        self,
        plans: Iterable[Plan],
        version: str = "1",
        file_hash: str = "",
    ) -> None:
        ordered = sorted(plans, key=lambda p: p.tier_rank)
        if not ordered:
            raise CatalogError("Plan catalog is empty")

        by_id: dict[str, Plan] = {}
        ranks: dict[int, str] = {}
        for plan in ordered:
            if plan.id in by_id:
                raise CatalogError(f"Duplicate plan id '{plan.id}'")
            if plan.tier_rank in ranks:
                raise CatalogError(
                    f"Plans '{ranks[plan.tier_rank]}' and '{plan.id}' "
                    f"share tier_rank {plan.tier_rank}"
                )
            by_id[plan.id] = plan
            ranks[plan.tier_rank] = plan.id

        errors = check_monotonic(ordered)
        if errors:
            raise CatalogError("Non-monotonic plan catalog: " + "; ".join(errors))

        self._plans = ordered
        self._by_id = by_id
        self._version = version
        self._file_hash = file_hash

    @property
    def version(self) -> str:
        return self._version

    @property
    def file_hash(self) -> str:
        """SHA-256 of the catalog file this was loaded from, if any."""
        return self._file_hash

    @property
    def plans(self) -> list[Plan]:
        """Plans ordered by tier rank, lowest first."""
        return list(self._plans)

    def __len__(self) -> int:
        return len(self._plans)

    def __contains__(self, plan_id: object) -> bool:
        return plan_id in self._by_id

    def list_plans(self) -> list[str]:
        return [p.id for p in self._plans]

    def get_plan(self, plan_id: str) -> Plan | None:
        """Look up a plan by id. Returns None if not found."""
        return self._by_id.get(plan_id)

    def get_or_raise(self, plan_id: str) -> Plan:
        plan = self._by_id.get(plan_id)
        if plan is None:
            raise CatalogError(f"Plan not found: {plan_id}")
        return plan

    def lowest_plan(self) -> Plan:
        return self._plans[0]

    def compare_tier(self, plan_a: str | Plan, plan_b: str | Plan) -> int:
        """Return -1, 0 or 1 as *plan_a* ranks below, equal to, or above *plan_b*."""
        rank_a = self._rank(plan_a)
        rank_b = self._rank(plan_b)
        return (rank_a > rank_b) - (rank_a < rank_b)

    def required_plan_for(self, feature: FeatureName) -> Plan | None:
        """Return the lowest-ranked plan that enables *feature*, or None."""
        for plan in self._plans:
            if plan.has_feature(feature):
                return plan
        return None

    def required_plan_for_module(self, module_id: str) -> Plan | None:
        """Return the lowest-ranked plan whose allowlist admits *module_id*."""
        for plan in self._plans:
            if plan.allows_module(module_id):
                return plan
        return None

    def export_formats(self, plan_id: str) -> frozenset[ExportFormat]:
        """Export formats allowed on a plan. Unknown plans get plain text only."""
        plan = self._by_id.get(plan_id)
        if plan is None:
            return frozenset({ExportFormat.TXT})
        return plan.usage_limits.export_formats

    def with_hourly_limits(self, hourly_limits: Mapping[str, int]) -> PlanCatalog:
        """Return a new catalog with per-plan hourly ceilings replaced."""
        unknown = sorted(set(hourly_limits) - set(self._by_id))
        if unknown:
            raise CatalogError(f"hourly_limits names unknown plans: {', '.join(unknown)}")

        plans: list[Plan] = []
        for plan in self._plans:
            if plan.id not in hourly_limits:
                plans.append(plan)
                continue
            limits = plan.usage_limits.model_copy(
                update={"hourly_calls": int(hourly_limits[plan.id])}
            )
            plans.append(plan.model_copy(update={"usage_limits": limits}))
        return PlanCatalog(plans, version=self._version, file_hash=self._file_hash)

    def _rank(self, plan: str | Plan) -> int:
        if isinstance(plan, Plan):
            return plan.tier_rank
        return self.get_or_raise(plan).tier_rank


def check_monotonic(plans: list[Plan]) -> list[str]:
    """Return one error per flag that is on at a lower tier but off above it.

    *plans* must be ordered by tier rank.
    """
    errors: list[str] = []
    for lower_idx, lower in enumerate(plans):
        for higher in plans[lower_idx + 1:]:
            for feature, enabled in lower.feature_flags.items():
                if enabled and not higher.has_feature(feature):
                    errors.append(
                        f"'{feature}' is enabled on '{lower.id}' "
                        f"but disabled on higher tier '{higher.id}'"
                    )
    return errors


def _parse_plan(entry: Any, source: str, index: int) -> Plan:
    if not isinstance(entry, dict):
        raise CatalogError(f"Plan at index {index} in {source} must be a mapping")
    try:
        return Plan(**entry)
    except (ValidationError, TypeError) as e:
        raise CatalogError(f"Invalid plan at index {index} in {source}: {e}") from e


def load_catalog(path: str | Path) -> PlanCatalog:
    """Load a plan catalog from a YAML file.

    The file must have a top-level ``plans`` list; ``version`` is optional.
    """
    path = Path(path)
    if not path.is_file():
        raise CatalogError(f"Catalog file not found: {path}")

    content = path.read_bytes()
    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise CatalogError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw, dict) or "plans" not in raw:
        raise CatalogError(f"Catalog file must have a 'plans' key: {path}")
    if not isinstance(raw["plans"], list):
        raise CatalogError(f"'plans' must be a list: {path}")

    plans = [_parse_plan(entry, str(path), i) for i, entry in enumerate(raw["plans"])]
    return PlanCatalog(
        plans,
        version=str(raw.get("version", "1")),
        file_hash=hashlib.sha256(content).hexdigest(),
    )


def _flags(*enabled: FeatureName) -> dict[FeatureName, bool]:
    return {feature: feature in enabled for feature in FeatureName}


_CORE_MODULES = frozenset(f"M{n:02d}" for n in range(1, 13))

_CREATOR_FEATURES = (FeatureName.CAN_EXPORT_MD, FeatureName.HAS_EVALUATOR_AI)

_PRO_FEATURES = (
    *_CREATOR_FEATURES,
    FeatureName.CAN_USE_ALL_MODULES,
    FeatureName.CAN_EXPORT_PDF,
    FeatureName.CAN_EXPORT_JSON,
    FeatureName.CAN_USE_GPT_TEST_REAL,
    FeatureName.HAS_CLOUD_HISTORY,
)


def default_catalog() -> PlanCatalog:
    """The built-in four-tier catalog used when no catalog file is configured."""
    return PlanCatalog(
        [
            Plan(
                id="free",
                label="Free",
                tier_rank=0,
                feature_flags=_flags(),
                module_allowlist=frozenset({"M01", "M02", "M03"}),
                usage_limits=UsageLimits(
                    monthly_calls=50,
                    hourly_calls=5,
                    export_formats=frozenset({ExportFormat.TXT}),
                ),
                retention_days=1,
            ),
            Plan(
                id="creator",
                label="Creator",
                tier_rank=1,
                feature_flags=_flags(*_CREATOR_FEATURES),
                module_allowlist=_CORE_MODULES,
                usage_limits=UsageLimits(
                    monthly_calls=500,
                    hourly_calls=10,
                    export_formats=frozenset({ExportFormat.TXT, ExportFormat.MD}),
                ),
                retention_days=7,
            ),
            Plan(
                id="pro",
                label="Pro",
                tier_rank=2,
                feature_flags=_flags(*_PRO_FEATURES),
                module_allowlist="ALL",
                usage_limits=UsageLimits(
                    monthly_calls=5000,
                    hourly_calls=50,
                    export_formats=frozenset({
                        ExportFormat.TXT,
                        ExportFormat.MD,
                        ExportFormat.JSON,
                        ExportFormat.PDF,
                    }),
                ),
                retention_days=90,
            ),
            Plan(
                id="enterprise",
                label="Enterprise",
                tier_rank=3,
                feature_flags=_flags(*FeatureName),
                module_allowlist="ALL",
                usage_limits=UsageLimits(
                    monthly_calls=50000,
                    hourly_calls=100,
                    export_formats=frozenset(ExportFormat),
                ),
                retention_days=-1,
            ),
        ],
        version="builtin-1",
    )
