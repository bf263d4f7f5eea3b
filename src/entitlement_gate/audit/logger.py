"""Gate audit log: one append-only fact per gate evaluation.

``GateAuditLog`` fans every ``GateDecision`` out to its sinks. Recording is
fire-and-forget with respect to the caller: a sink failure is logged to the
operational error channel (this module's logger) and counted, and never
changes an allow/deny outcome.

The primary sink, ``JsonlAuditSink``, writes hash-chained JSON lines:
- prev_hash: SHA-256 of the previous entry (or "0"*64 for the first)
- entry_hash: SHA-256 of this entry's content (computed before writing)

Modifying or deleting any entry breaks the chain and is detectable via
verify_log().
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import uuid
from collections import Counter
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from entitlement_gate.models import AuditEntry, GateDecision, GateKind, ReasonCode

if TYPE_CHECKING:
    from entitlement_gate.audit.sinks import AuditSink

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


class AuditError(Exception):
    """Raised when the audit log encounters an error."""


def new_decision(
    kind: GateKind,
    passed: bool,
    reason: ReasonCode,
    principal_id: str,
    plan_id: str,
    metadata: dict[str, Any] | None = None,
    timestamp: datetime | None = None,
) -> GateDecision:
    """Build a GateDecision with a fresh gate id."""
    return GateDecision(
        gate_id=f"gate-{uuid.uuid4().hex[:12]}",
        kind=kind,
        passed=passed,
        reason=reason,
        principal_id=principal_id,
        plan_id=plan_id,
        timestamp=timestamp or datetime.now(tz=UTC),
        metadata=metadata or {},
    )


class GateAuditLog:
    """Records gate decisions to one or more sinks.

    Thread-safe: sinks serialize their own writes, the failure counter is
    guarded by a lock.
    """

    def __init__(self, sinks: list[AuditSink] | None = None) -> None:
        self._sinks: list[AuditSink] = list(sinks or [])
        self._lock = threading.Lock()
        self._failures = 0

    @property
    def sinks(self) -> list[AuditSink]:
        return list(self._sinks)

    @property
    def failures(self) -> int:
        """Number of sink writes that have failed since construction."""
        with self._lock:
            return self._failures

    def add_sink(self, sink: AuditSink) -> None:
        self._sinks.append(sink)

    def record(self, decision: GateDecision) -> None:
        """Write *decision* to every sink. Never raises."""
        for sink in self._sinks:
            try:
                sink.write(decision)
            except Exception:
                with self._lock:
                    self._failures += 1
                logger.exception(
                    "Audit sink %s failed to record %s (%s %s for %s)",
                    type(sink).__name__,
                    decision.gate_id,
                    decision.kind,
                    decision.reason,
                    decision.principal_id,
                )

    def close(self) -> None:
        for sink in self._sinks:
            close = getattr(sink, "close", None)
            if close is not None:
                close()


class JsonlAuditSink:
    """Append-only, hash-chained JSON-lines audit sink.

    Thread-safe via a lock on write operations.
    """

    def __init__(self, log_path: str | Path) -> None:
        self._path = Path(log_path)
        self._lock = threading.Lock()
        self._prev_hash = self._read_last_hash()

    def _read_last_hash(self) -> str:
        """Read the hash of the last entry, or return genesis hash."""
        if not self._path.exists() or self._path.stat().st_size == 0:
            return GENESIS_HASH

        last_line = ""
        with self._path.open("r", encoding="utf-8") as f:
            for line in f:
                stripped = line.strip()
                if stripped:
                    last_line = stripped

        if not last_line:
            return GENESIS_HASH

        try:
            entry = json.loads(last_line)
            return entry.get("entry_hash", GENESIS_HASH)
        except json.JSONDecodeError as exc:
            raise AuditError(
                f"Corrupt audit log: last line is not valid JSON: {self._path}"
            ) from exc

    @property
    def path(self) -> Path:
        return self._path

    @property
    def prev_hash(self) -> str:
        return self._prev_hash

    def write(self, decision: GateDecision) -> AuditEntry:
        """Chain *decision* onto the log and append it."""
        with self._lock:
            entry = AuditEntry(**decision.model_dump(), prev_hash=self._prev_hash)

            hash_payload = entry.model_dump(mode="json", exclude={"entry_hash"})
            payload_bytes = json.dumps(hash_payload, sort_keys=True).encode("utf-8")
            entry.entry_hash = hashlib.sha256(payload_bytes).hexdigest()

            json_line = json.dumps(entry.model_dump(mode="json"), sort_keys=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(json_line + "\n")
            self._prev_hash = entry.entry_hash

        return entry

    def read_entries(self) -> list[AuditEntry]:
        """Read all entries from the log file."""
        if not self._path.exists():
            return []

        entries: list[AuditEntry] = []
        with self._path.open("r", encoding="utf-8") as f:
            for i, line in enumerate(f):
                stripped = line.strip()
                if not stripped:
                    continue
                try:
                    entries.append(AuditEntry(**json.loads(stripped)))
                except Exception as e:
                    raise AuditError(
                        f"Corrupt entry at line {i + 1} in {self._path}: {e}"
                    ) from e

        return entries


def verify_log(log_path: str | Path) -> tuple[bool, list[str]]:
    """Verify the integrity of a hash-chained audit log.

    Returns (is_valid, list_of_errors).
    An empty error list means the log is intact.
    """
    log_path = Path(log_path)
    if not log_path.exists():
        return True, []

    errors: list[str] = []
    prev_hash = GENESIS_HASH
    line_num = 0

    with log_path.open("r", encoding="utf-8") as f:
        for line in f:
            stripped = line.strip()
            if not stripped:
                continue
            line_num += 1

            try:
                data = json.loads(stripped)
            except json.JSONDecodeError as e:
                errors.append(f"Line {line_num}: invalid JSON: {e}")
                continue

            stored_prev = data.get("prev_hash", "")
            if stored_prev != prev_hash:
                errors.append(
                    f"Line {line_num}: chain broken, "
                    f"expected prev_hash {prev_hash[:16]}..., "
                    f"got {stored_prev[:16]}..."
                )

            stored_hash = data.get("entry_hash", "")
            verify_data = {k: v for k, v in data.items() if k != "entry_hash"}
            recomputed = hashlib.sha256(
                json.dumps(verify_data, sort_keys=True).encode("utf-8")
            ).hexdigest()

            if stored_hash != recomputed:
                errors.append(
                    f"Line {line_num}: hash mismatch, "
                    f"stored {stored_hash[:16]}..., "
                    f"computed {recomputed[:16]}..."
                )

            prev_hash = stored_hash

    return len(errors) == 0, errors


def summarize(decisions: Iterable[GateDecision]) -> dict[str, Any]:
    """Aggregate pass/deny counts per kind and per reason code."""
    total = 0
    passed = 0
    by_kind: Counter[str] = Counter()
    by_reason: Counter[str] = Counter()
    principals: set[str] = set()

    for decision in decisions:
        total += 1
        if decision.passed:
            passed += 1
        by_kind[decision.kind.value] += 1
        by_reason[decision.reason.value] += 1
        principals.add(decision.principal_id)

    return {
        "total": total,
        "passed": passed,
        "denied": total - passed,
        "by_kind": dict(by_kind),
        "by_reason": dict(by_reason),
        "principals": len(principals),
    }
