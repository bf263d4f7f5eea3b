"""Tests for the gate audit log and its hash-chained JSONL sink."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from entitlement_gate.audit.logger import (
    GENESIS_HASH,
    AuditError,
    GateAuditLog,
    JsonlAuditSink,
    new_decision,
    summarize,
    verify_log,
)
from entitlement_gate.audit.sinks import MemoryAuditSink
from entitlement_gate.models import GateDecision, GateKind, ReasonCode


@pytest.fixture()
def log_path(tmp_path: Path) -> Path:
    return tmp_path / "audit.jsonl"


@pytest.fixture()
def allow_decision() -> GateDecision:
    return new_decision(
        GateKind.QUOTA, True, ReasonCode.ALLOWED, "org-1", "pro",
        metadata={"mode": "reserve", "weight": 1},
    )


@pytest.fixture()
def deny_decision() -> GateDecision:
    return new_decision(
        GateKind.ENTITLEMENT, False, ReasonCode.INSUFFICIENT_PLAN, "org-2", "free",
        metadata={"feature": "canExportPDF", "required_plan": "pro"},
    )


class TestNewDecision:
    def test_unique_gate_ids(self):
        ids = {
            new_decision(GateKind.QUOTA, True, ReasonCode.ALLOWED, "p", "free").gate_id
            for _ in range(50)
        }
        assert len(ids) == 50
        assert all(i.startswith("gate-") and len(i) == 17 for i in ids)

    def test_timestamp_is_utc(self, allow_decision: GateDecision):
        assert allow_decision.timestamp.utcoffset().total_seconds() == 0


# --- JSONL chain ---


class TestJsonlSink:
    def test_first_entry_uses_genesis_hash(self, log_path: Path, allow_decision):
        entry = JsonlAuditSink(log_path).write(allow_decision)
        assert entry.prev_hash == GENESIS_HASH
        assert len(entry.entry_hash) == 64

    def test_second_entry_chains_to_first(self, log_path: Path, allow_decision, deny_decision):
        sink = JsonlAuditSink(log_path)
        first = sink.write(allow_decision)
        second = sink.write(deny_decision)
        assert second.prev_hash == first.entry_hash
        assert sink.prev_hash == second.entry_hash

    def test_fields_persisted(self, log_path: Path, deny_decision):
        sink = JsonlAuditSink(log_path)
        sink.write(deny_decision)
        (entry,) = sink.read_entries()
        assert entry.gate_id == deny_decision.gate_id
        assert entry.kind == GateKind.ENTITLEMENT
        assert entry.reason == ReasonCode.INSUFFICIENT_PLAN
        assert not entry.passed
        assert entry.metadata == {"feature": "canExportPDF", "required_plan": "pro"}

    def test_log_is_json_lines(self, log_path: Path, allow_decision, deny_decision):
        sink = JsonlAuditSink(log_path)
        sink.write(allow_decision)
        sink.write(deny_decision)
        lines = log_path.read_text(encoding="utf-8").strip().split("\n")
        assert len(lines) == 2
        assert json.loads(lines[1])["reason"] == "InsufficientPlan"

    def test_new_sink_continues_chain(self, log_path: Path, allow_decision, deny_decision):
        first = JsonlAuditSink(log_path).write(allow_decision)
        second = JsonlAuditSink(log_path).write(deny_decision)
        assert second.prev_hash == first.entry_hash
        assert verify_log(log_path) == (True, [])

    def test_read_nonexistent(self, tmp_path: Path):
        assert JsonlAuditSink(tmp_path / "missing.jsonl").read_entries() == []

    def test_corrupt_last_line(self, log_path: Path):
        log_path.write_text("{not json\n", encoding="utf-8")
        with pytest.raises(AuditError, match="Corrupt audit log"):
            JsonlAuditSink(log_path)


class TestVerify:
    def _write(self, log_path: Path, decisions) -> None:
        sink = JsonlAuditSink(log_path)
        for d in decisions:
            sink.write(d)

    def test_valid_chain(self, log_path: Path, allow_decision, deny_decision):
        self._write(log_path, [allow_decision, deny_decision, allow_decision])
        assert verify_log(log_path) == (True, [])

    def test_missing_log_is_valid(self, tmp_path: Path):
        assert verify_log(tmp_path / "missing.jsonl") == (True, [])

    def test_tampered_entry_detected(self, log_path: Path, allow_decision, deny_decision):
        self._write(log_path, [deny_decision, allow_decision])
        lines = log_path.read_text(encoding="utf-8").splitlines()
        data = json.loads(lines[0])
        data["passed"] = True
        lines[0] = json.dumps(data, sort_keys=True)
        log_path.write_text("\n".join(lines) + "\n", encoding="utf-8")

        valid, errors = verify_log(log_path)
        assert not valid
        assert any("hash mismatch" in e for e in errors)

    def test_deleted_entry_detected(self, log_path: Path, allow_decision, deny_decision):
        self._write(log_path, [allow_decision, deny_decision, allow_decision])
        lines = log_path.read_text(encoding="utf-8").splitlines()
        log_path.write_text(lines[0] + "\n" + lines[2] + "\n", encoding="utf-8")

        valid, errors = verify_log(log_path)
        assert not valid
        assert any("chain broken" in e for e in errors)

    def test_corrupt_json_detected(self, log_path: Path, allow_decision):
        self._write(log_path, [allow_decision])
        with log_path.open("a", encoding="utf-8") as f:
            f.write("garbage\n")
        valid, errors = verify_log(log_path)
        assert not valid
        assert "invalid JSON" in errors[0]


# --- Fan-out ---


class TestGateAuditLog:
    def test_fans_out_to_every_sink(self, log_path: Path, allow_decision):
        memory = MemoryAuditSink()
        audit = GateAuditLog([JsonlAuditSink(log_path), memory])
        audit.record(allow_decision)
        assert len(memory) == 1
        assert len(JsonlAuditSink(log_path).read_entries()) == 1

    def test_sink_failure_is_swallowed_and_logged(self, allow_decision, caplog):
        class Broken:
            def write(self, decision):
                raise OSError("disk full")

        memory = MemoryAuditSink()
        audit = GateAuditLog([Broken(), memory])
        with caplog.at_level(logging.ERROR, logger="entitlement_gate.audit.logger"):
            audit.record(allow_decision)

        assert audit.failures == 1
        assert len(memory) == 1
        assert "Broken failed to record" in caplog.text

    def test_add_sink(self, allow_decision):
        audit = GateAuditLog()
        memory = MemoryAuditSink()
        audit.add_sink(memory)
        audit.record(allow_decision)
        assert audit.sinks == [memory]
        assert len(memory) == 1

    def test_close_calls_sink_close(self):
        closed = []

        class Closable:
            def write(self, decision):
                pass

            def close(self):
                closed.append(True)

        GateAuditLog([Closable(), MemoryAuditSink()]).close()
        assert closed == [True]


class TestSummarize:
    def test_counts(self, allow_decision, deny_decision):
        stats = summarize([allow_decision, deny_decision, allow_decision])
        assert stats == {
            "total": 3,
            "passed": 2,
            "denied": 1,
            "by_kind": {"quota": 2, "entitlement": 1},
            "by_reason": {"Allowed": 2, "InsufficientPlan": 1},
            "principals": 2,
        }

    def test_empty(self):
        assert summarize([])["total"] == 0
