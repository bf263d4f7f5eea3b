#!/usr/bin/env python3
"""Demo: plan gating and usage quotas.

Shows a free-tier organization being refused a pro feature, then
exhausting its hourly ceiling, while a pro organization with an active
subscription gets through.

Run after ``pip install -e .``:
    python examples/demo_quota.py
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from entitlement_gate import EntitlementGate
from entitlement_gate.models import ReasonCode, Subscription, SubscriptionStatus

GREEN = "\033[92m"
RED = "\033[91m"
YELLOW = "\033[93m"
BOLD = "\033[1m"
RESET = "\033[0m"

COLORS = {
    ReasonCode.ALLOWED: GREEN,
    ReasonCode.INSUFFICIENT_PLAN: RED,
    ReasonCode.QUOTA_EXCEEDED: RED,
    ReasonCode.RATE_LIMITED: YELLOW,
}


def _show(label: str, verdict) -> None:
    color = COLORS.get(verdict.reason_code, "")
    extra = ""
    if verdict.required_plan:
        extra = f" (requires {verdict.required_plan})"
    elif verdict.remaining is not None:
        extra = f" (remaining {verdict.remaining})"
    print(f"  {label:<28} {color}{verdict.reason_code.value}{RESET}{extra}")


def main() -> None:
    now = datetime.now(tz=UTC)
    with EntitlementGate() as gate:
        gate.subscriptions.put(Subscription(
            principal_id="org-pro",
            plan_id="pro",
            status=SubscriptionStatus.ACTIVE,
            period_start=now - timedelta(days=1),
            period_end=now + timedelta(days=30),
        ))

        print(f"{BOLD}Feature gating{RESET}")
        _show("org-free canExportPDF", gate.check("org-free", feature="canExportPDF"))
        _show("org-pro canExportPDF", gate.check("org-pro", feature="canExportPDF"))

        print(f"\n{BOLD}Hourly ceiling (free: 5/hour){RESET}")
        for i in range(7):
            _show(f"org-free call {i + 1}", gate.check("org-free", weight=1))

        print(f"\n{BOLD}Usage summary{RESET}")
        for key, value in gate.usage_summary("org-free").items():
            print(f"  {key:<16} {value}")


if __name__ == "__main__":
    main()
