"""entitlement-gate CLI: command-line interface for Entitlement-Gate.

Commands:
    init            Scaffold a new project (config + catalog)
    check           Evaluate a gate request for a principal
    plans list      Show the plans in the catalog
    plans validate  Validate a catalog file
    usage show      Show a principal's usage against its plan
    usage record    Record a usage event for a principal
    audit verify    Verify audit log chain integrity
    audit show      Show recent audit log entries
    audit stats     Summarize decisions in the audit log
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from entitlement_gate import __version__
from entitlement_gate.audit.logger import AuditError, JsonlAuditSink, summarize, verify_log
from entitlement_gate.catalog.loader import CatalogError, PlanCatalog, default_catalog, load_catalog
from entitlement_gate.config import CONFIG_FILENAME, GateConfig, load_config
from entitlement_gate.models import ALL_MODULES, AuditEntry, GateInputError, GateKind, ReasonCode
from entitlement_gate.sdk.client import EntitlementGate
from entitlement_gate.usage.store import StoreUnavailableError

# --- Defaults ---

DEFAULT_DATABASE = "./entitlement-gate.db"
DEFAULT_AUDIT_LOG = "./audit.jsonl"


def _resolve_cfg() -> GateConfig:
    """Load config from entitlement-gate.yaml (auto-discover, never error)."""
    try:
        return load_config()
    except Exception:
        return GateConfig()


def _or(explicit: str | None, cfg_val: str | None, fallback: str) -> str:
    """Return first non-None value: explicit CLI flag > config > fallback."""
    return explicit or cfg_val or fallback


def _load_catalog(path: str | None) -> PlanCatalog:
    return load_catalog(path) if path else default_catalog()


def _open_gate(
    cfg: GateConfig,
    catalog: str | None,
    database: str | None,
    audit_log: str | None,
) -> EntitlementGate:
    try:
        return EntitlementGate.from_config(
            cfg,
            catalog=catalog or cfg.catalog,
            database=_or(database, cfg.database, DEFAULT_DATABASE),
            audit_log=_or(audit_log, cfg.audit_log, DEFAULT_AUDIT_LOG),
        )
    except Exception as e:
        click.echo(f"Error loading config: {e}", err=True)
        sys.exit(1)


def _reason_badge(reason: ReasonCode, passed: bool) -> str:
    """Return a coloured reason badge for CLI output."""
    if passed:
        color = "yellow" if reason == ReasonCode.STORE_UNAVAILABLE else "green"
    elif reason in (ReasonCode.MISCONFIGURED, ReasonCode.STORE_UNAVAILABLE):
        color = "magenta"
    else:
        color = "red"
    return click.style(f"[{reason.value}]", fg=color)


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Entitlement-Gate: plan entitlements and usage quotas."""


# --- init command ---


_INIT_CATALOG = """\
# Plan catalog. Plans are ordered by tier_rank (lowest first).
# A feature enabled on a lower tier must stay enabled on every higher tier.
version: "1"

plans:
  - id: free
    label: Free
    tier_rank: 0
    module_allowlist: [M01, M02, M03]
    usage_limits:
      monthly_calls: 50
      hourly_calls: 5
      export_formats: [txt]
    retention_days: 1

  - id: creator
    label: Creator
    tier_rank: 1
    feature_flags:
      canExportMD: true
      hasEvaluatorAI: true
    module_allowlist: [M01, M02, M03, M04, M05, M06, M07, M08, M09, M10, M11, M12]
    usage_limits:
      monthly_calls: 500
      hourly_calls: 10
      export_formats: [txt, md]
    retention_days: 7

  - id: pro
    label: Pro
    tier_rank: 2
    feature_flags:
      canExportMD: true
      hasEvaluatorAI: true
      canUseAllModules: true
      canExportPDF: true
      canExportJSON: true
      canUseGptTestReal: true
      hasCloudHistory: true
    module_allowlist: ALL
    usage_limits:
      monthly_calls: 5000
      hourly_calls: 50
      export_formats: [txt, md, json, pdf]
    retention_days: 90

  - id: enterprise
    label: Enterprise
    tier_rank: 3
    feature_flags:
      canExportMD: true
      hasEvaluatorAI: true
      canUseAllModules: true
      canExportPDF: true
      canExportJSON: true
      canUseGptTestReal: true
      hasCloudHistory: true
      hasAPI: true
      hasWhiteLabel: true
      canExportBundleZip: true
      hasSeatsGT1: true
    module_allowlist: ALL
    usage_limits:
      monthly_calls: 50000
      hourly_calls: 100
      export_formats: [txt, md, json, pdf, bundle]
"""

_INIT_CONFIG = """\
# Entitlement-Gate project configuration

# Paths (relative to this file)
catalog: ./catalog.yaml
database: ./entitlement-gate.db
audit_log: ./audit.jsonl

# What to answer when the usage store cannot be read:
#   fail_open   admit, flagged degraded (default)
#   fail_closed deny with StoreUnavailable
rate_limit:
  failure_policy: fail_open
  degraded_remaining: 1000

# Per-plan hourly overrides (optional)
# hourly_limits:
#   pro: 60
"""

_INIT_GITIGNORE = """\
# Entitlement-Gate runtime files
entitlement-gate.db*
audit.jsonl
"""


@cli.command()
@click.argument("directory", default=".")
def init(directory: str) -> None:
    """Scaffold a new Entitlement-Gate project with example config."""
    root = Path(directory)
    root.mkdir(parents=True, exist_ok=True)

    created: list[str] = []
    skipped: list[str] = []

    for filename, content in (
        (CONFIG_FILENAME, _INIT_CONFIG),
        ("catalog.yaml", _INIT_CATALOG),
        (".gitignore", _INIT_GITIGNORE),
    ):
        path = root / filename
        if path.exists():
            skipped.append(filename)
            continue
        path.write_text(content, encoding="utf-8")
        created.append(filename)

    if created:
        click.echo(click.style("Created:", fg="green", bold=True))
        for f in created:
            click.echo(f"  + {f}")

    for s in skipped:
        click.echo(f"  skip  {s} (already exists)")

    if created:
        click.echo("\n" + click.style("Next steps:", bold=True))
        click.echo("  entitlement-gate plans validate --catalog catalog.yaml")
        click.echo("  entitlement-gate check org-42 --plan pro --feature canExportPDF --weight 1")


# --- check command ---


@cli.command()
@click.argument("principal")
@click.option("--plan", "plan_id", default=None, help="Plan id (default: from subscription)")
@click.option("--feature", "-f", default=None, help="Feature name, e.g. canExportPDF")
@click.option("--module", "-m", "module_id", default=None, help="Module id, e.g. M07")
@click.option(
    "--weight", "-w", type=int, default=None,
    help="Reserve this many units (omit to only check headroom)",
)
@click.option("--endpoint", default="api", help="Endpoint tag for recorded usage")
@click.option("--catalog", default=None, help="Path to catalog YAML file")
@click.option("--database", default=None, help="Path to usage database")
@click.option("--audit-log", default=None, help="Path to audit log file")
@click.option("--json-output", is_flag=True, help="Output as JSON")
def check(
    principal: str,
    plan_id: str | None,
    feature: str | None,
    module_id: str | None,
    weight: int | None,
    endpoint: str,
    catalog: str | None,
    database: str | None,
    audit_log: str | None,
    json_output: bool,
) -> None:
    """Evaluate a gate request for a principal."""
    cfg = _resolve_cfg()
    gate = _open_gate(cfg, catalog, database, audit_log)

    try:
        verdict = gate.check(
            principal_id=principal,
            plan_id=plan_id,
            feature=feature,
            module_id=module_id,
            weight=weight,
            endpoint=endpoint,
        )
    except GateInputError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        gate.close()

    if json_output:
        click.echo(json.dumps(verdict.to_dict(), indent=2))
        return

    label = "ALLOW" if verdict.allowed else "DENY"
    click.echo(
        click.style(label, fg="green" if verdict.allowed else "red", bold=True)
        + f" {_reason_badge(verdict.reason_code, verdict.allowed)}"
    )
    click.echo(f"  principal: {principal}")
    click.echo(f"  plan:      {verdict.plan_id}")
    if verdict.required_plan:
        click.echo(f"  requires:  {verdict.required_plan}")
    if verdict.limit is not None:
        click.echo(f"  remaining: {verdict.remaining} / {verdict.limit}")
    if verdict.reset_time is not None:
        click.echo(f"  resets:    {verdict.reset_time.isoformat()}")
    if verdict.degraded:
        click.echo(click.style("  degraded:  usage store unavailable", fg="yellow"))


# --- plans group ---


@cli.group()
def plans() -> None:
    """Plan catalog commands."""


@plans.command("list")
@click.option("--catalog", default=None, help="Path to catalog YAML file")
@click.option("--json-output", is_flag=True, help="Output as JSON")
def plans_list(catalog: str | None, json_output: bool) -> None:
    """Show the plans in the catalog, lowest tier first."""
    cfg = _resolve_cfg()
    try:
        cat = _load_catalog(catalog or cfg.catalog)
    except CatalogError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if json_output:
        data = [p.model_dump(mode="json") for p in cat.plans]
        click.echo(json.dumps(data, indent=2))
        return

    for plan in cat.plans:
        limits = plan.usage_limits
        modules = (
            "all modules" if plan.module_allowlist == ALL_MODULES
            else f"{len(plan.module_allowlist)} module(s)"
        )
        enabled = sum(1 for v in plan.feature_flags.values() if v)
        click.echo(
            f"  {plan.tier_rank}  "
            + click.style(f"{plan.id:<12}", bold=True)
            + f" {limits.monthly_calls:>7}/mo {limits.hourly_calls:>5}/h"
            + f"  {enabled} feature(s), {modules}"
        )
    click.echo(f"\n{len(cat)} plan(s), catalog version {cat.version}.")


@plans.command("validate")
@click.option("--catalog", default=None, help="Path to catalog YAML file")
def plans_validate(catalog: str | None) -> None:
    """Validate a catalog file (schema, unique ranks, monotonic flags)."""
    cfg = _resolve_cfg()
    path = catalog or cfg.catalog
    if not path:
        click.echo("No catalog file configured; the built-in catalog is used.")
        return

    try:
        cat = load_catalog(path)
    except CatalogError as e:
        click.echo(click.style("FAIL", fg="red") + f"  catalog: {e}")
        sys.exit(1)

    click.echo(
        click.style("OK", fg="green")
        + f"  catalog: {len(cat)} plan(s) loaded (sha256 {cat.file_hash[:12]})"
    )


# --- usage group ---


@cli.group()
def usage() -> None:
    """Usage commands."""


@usage.command("show")
@click.argument("principal")
@click.option("--plan", "plan_id", default=None, help="Plan id (default: from subscription)")
@click.option("--catalog", default=None, help="Path to catalog YAML file")
@click.option("--database", default=None, help="Path to usage database")
@click.option("--json-output", is_flag=True, help="Output as JSON")
def usage_show(
    principal: str,
    plan_id: str | None,
    catalog: str | None,
    database: str | None,
    json_output: bool,
) -> None:
    """Show a principal's usage against its plan's ceilings."""
    cfg = _resolve_cfg()
    gate = _open_gate(cfg, catalog, database, None)
    try:
        summary = gate.usage_summary(principal, plan_id=plan_id)
    except (CatalogError, GateInputError, StoreUnavailableError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        gate.close()

    if json_output:
        click.echo(json.dumps(summary, indent=2))
        return

    click.echo(f"  principal: {summary['principal_id']}  (plan {summary['plan_id']})")
    click.echo(f"  monthly:   {summary['monthly_usage']} / {summary['monthly_limit']}")
    click.echo(f"  hourly:    {summary['hourly_usage']} / {summary['hourly_limit']}")
    click.echo(f"  remaining: {summary['remaining']}  (resets {summary['reset_time']})")
    click.echo(f"  exports:   {', '.join(summary['export_formats'])}")


@usage.command("record")
@click.argument("principal")
@click.option("--weight", "-w", type=int, default=1, help="Units to record")
@click.option("--endpoint", default="api", help="Endpoint tag")
@click.option("--database", default=None, help="Path to usage database")
def usage_record(principal: str, weight: int, endpoint: str, database: str | None) -> None:
    """Record a usage event without a quota check."""
    cfg = _resolve_cfg()
    gate = _open_gate(cfg, None, database, None)
    try:
        record = gate.record_usage(principal, weight=weight, endpoint=endpoint)
    except GateInputError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        gate.close()

    click.echo(
        click.style("RECORDED", fg="green", bold=True)
        + f" {record.record_id}  principal={record.principal_id}"
        + f"  weight={record.weight}  endpoint={record.endpoint}"
    )


# --- audit group ---


@cli.group()
def audit() -> None:
    """Audit log commands."""


def _read_audit(log_file: str) -> list[AuditEntry]:
    path = Path(log_file)
    if not path.exists():
        click.echo(f"Audit log not found: {path}")
        sys.exit(1)
    try:
        return JsonlAuditSink(path).read_entries()
    except AuditError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@audit.command("verify")
@click.argument("log_file", default=DEFAULT_AUDIT_LOG)
def audit_verify(log_file: str) -> None:
    """Verify audit log chain integrity."""
    path = Path(log_file)
    if not path.exists():
        click.echo(f"Audit log not found: {path}")
        sys.exit(1)

    is_valid, errors = verify_log(path)

    if is_valid:
        click.echo(click.style("VALID", fg="green", bold=True)
                   + f": audit log chain is intact ({path})")
    else:
        click.echo(click.style("INVALID", fg="red", bold=True)
                   + f": {len(errors)} error(s) found:")
        for error in errors:
            click.echo(f"  - {error}")
        sys.exit(1)


@audit.command("show")
@click.argument("log_file", default=DEFAULT_AUDIT_LOG)
@click.option("--last", "count", default=20, help="Number of entries to show")
@click.option("--principal", default=None, help="Filter by principal id")
@click.option(
    "--kind", default=None,
    type=click.Choice([k.value for k in GateKind]),
    help="Filter by gate kind",
)
@click.option("--json-output", is_flag=True, help="Output as JSON")
def audit_show(
    log_file: str,
    count: int,
    principal: str | None,
    kind: str | None,
    json_output: bool,
) -> None:
    """Show recent audit log entries."""
    entries = _read_audit(log_file)

    if principal is not None:
        entries = [e for e in entries if e.principal_id == principal]
    if kind is not None:
        entries = [e for e in entries if e.kind == kind]

    entries = entries[-count:]

    if json_output:
        data = [e.model_dump(mode="json") for e in entries]
        click.echo(json.dumps(data, indent=2))
        return

    if not entries:
        click.echo("No audit entries found.")
        return
    for entry in entries:
        label = "PASS" if entry.passed else "DENY"
        click.echo(
            f"  {entry.timestamp.isoformat()[:19]}  "
            + click.style(f"{label:<5}", fg="green" if entry.passed else "red")
            + f" {entry.kind.value:<12} {_reason_badge(entry.reason, entry.passed)}"
            + f"  principal={entry.principal_id}  plan={entry.plan_id}"
        )
    click.echo(f"\n{len(entries)} entr{'y' if len(entries) == 1 else 'ies'} shown.")


@audit.command("stats")
@click.argument("log_file", default=DEFAULT_AUDIT_LOG)
@click.option("--json-output", is_flag=True, help="Output as JSON")
def audit_stats(log_file: str, json_output: bool) -> None:
    """Summarize pass/deny counts per gate kind and reason."""
    stats = summarize(_read_audit(log_file))

    if json_output:
        click.echo(json.dumps(stats, indent=2))
        return

    click.echo(
        f"  total: {stats['total']}  "
        + click.style(f"passed: {stats['passed']}", fg="green")
        + "  "
        + click.style(f"denied: {stats['denied']}", fg="red")
        + f"  principals: {stats['principals']}"
    )
    for kind, n in sorted(stats["by_kind"].items()):
        click.echo(f"  kind   {kind:<18} {n}")
    for reason, n in sorted(stats["by_reason"].items()):
        click.echo(f"  reason {reason:<18} {n}")


if __name__ == "__main__":
    cli()
