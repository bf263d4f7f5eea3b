"""Pluggable write sinks for gate decisions.

Built-in backends:
- JsonlAuditSink: hash-chained JSON lines (see audit.logger)
- SqliteAuditSink: append-only ``gate_decisions`` table
- MemoryAuditSink: bounded in-process history, useful for dashboards and tests
- WebhookAuditSink: POST JSON to a URL (stdlib only)

Custom sinks just need a ``write(decision: GateDecision) -> Any`` method.
"""

from __future__ import annotations

import json
import threading
import urllib.request
from collections import deque
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from entitlement_gate.audit.logger import JsonlAuditSink
from entitlement_gate.models import GateDecision, GateKind, ReasonCode
from entitlement_gate.storage.database import Database
from entitlement_gate.usage.windows import db_timestamp


@runtime_checkable
class AuditSink(Protocol):
    """Protocol for gate decision sinks.

    Any object with a ``write(decision)`` method satisfies this protocol.
    """

    def write(self, decision: GateDecision) -> Any:
        """Persist a single gate decision."""
        ...


class SqliteAuditSink:
    """Append gate decisions to the ``gate_decisions`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def write(self, decision: GateDecision) -> None:
        self._db.write(
            "INSERT INTO gate_decisions "
            "(gate_id, kind, passed, reason, principal_id, plan_id, timestamp, metadata) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                decision.gate_id,
                decision.kind.value,
                int(decision.passed),
                decision.reason.value,
                decision.principal_id,
                decision.plan_id,
                db_timestamp(decision.timestamp),
                json.dumps(decision.metadata, sort_keys=True, default=str),
            ),
        )

    def query(
        self,
        principal_id: str | None = None,
        kind: GateKind | None = None,
        limit: int = 100,
    ) -> list[GateDecision]:
        """Return the most recent decisions, newest first."""
        clauses: list[str] = []
        params: list[Any] = []
        if principal_id is not None:
            clauses.append("principal_id = ?")
            params.append(principal_id)
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind.value)

        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        rows = self._db.fetchall(
            f"SELECT * FROM gate_decisions {where}ORDER BY id DESC LIMIT ?",  # noqa: S608
            (*params, limit),
        )
        return [
            GateDecision(
                gate_id=row["gate_id"],
                kind=GateKind(row["kind"]),
                passed=bool(row["passed"]),
                reason=ReasonCode(row["reason"]),
                principal_id=row["principal_id"],
                plan_id=row["plan_id"],
                timestamp=datetime.fromisoformat(row["timestamp"]),
                metadata=json.loads(row["metadata"]),
            )
            for row in rows
        ]


class MemoryAuditSink:
    """Keep the most recent decisions in memory."""

    def __init__(self, max_entries: int = 10_000) -> None:
        self._entries: deque[GateDecision] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def write(self, decision: GateDecision) -> None:
        with self._lock:
            self._entries.append(decision)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def decisions(
        self,
        principal_id: str | None = None,
        kind: GateKind | None = None,
    ) -> list[GateDecision]:
        """Return retained decisions in write order, optionally filtered."""
        with self._lock:
            entries = list(self._entries)
        return [
            d for d in entries
            if (principal_id is None or d.principal_id == principal_id)
            and (kind is None or d.kind == kind)
        ]


class WebhookAuditSink:
    """POST gate decisions as JSON to a webhook URL.

    Uses stdlib ``urllib.request``, no extra dependencies required.
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._url = url
        self._headers = headers or {}
        self._timeout = timeout

    def write(self, decision: GateDecision) -> None:
        envelope = {
            "decision": decision.model_dump(mode="json"),
            "shipped_at": datetime.now(tz=UTC).isoformat(),
        }
        body = json.dumps(envelope, sort_keys=True).encode("utf-8")

        req = urllib.request.Request(
            self._url,
            data=body,
            headers={
                "Content-Type": "application/json",
                **self._headers,
            },
            method="POST",
        )
        with urllib.request.urlopen(req, timeout=self._timeout):  # noqa: S310
            pass


def build_sinks(config: dict[str, Any], db: Database | None = None) -> list[AuditSink]:
    """Build sink instances from a configuration dict.

    Supported keys:
    - ``jsonl_path``: path for JsonlAuditSink
    - ``sqlite``: true to write to the gate database (requires *db*)
    - ``memory``: true, or a max entry count, for MemoryAuditSink
    - ``webhook_url``: URL for WebhookAuditSink
    - ``webhook_headers``: optional headers dict for WebhookAuditSink
    - ``webhook_timeout``: optional timeout for WebhookAuditSink (default 10.0)
    """
    sinks: list[AuditSink] = []

    if config.get("jsonl_path") is not None:
        sinks.append(JsonlAuditSink(config["jsonl_path"]))

    if config.get("sqlite"):
        if db is None:
            raise ValueError("audit sink 'sqlite' requires a database")
        sinks.append(SqliteAuditSink(db))

    memory = config.get("memory")
    if memory:
        if memory is True:
            sinks.append(MemoryAuditSink())
        else:
            sinks.append(MemoryAuditSink(max_entries=int(memory)))

    if config.get("webhook_url") is not None:
        sinks.append(
            WebhookAuditSink(
                url=config["webhook_url"],
                headers=config.get("webhook_headers"),
                timeout=config.get("webhook_timeout", 10.0),
            )
        )

    return sinks
