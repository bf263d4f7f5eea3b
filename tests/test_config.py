"""Tests for config file loading and auto-discovery."""

from __future__ import annotations

from pathlib import Path

import pytest

from entitlement_gate.config import CONFIG_FILENAME, GateConfig, find_config, load_config

FULL_CONFIG = """\
catalog: ./catalog.yaml
database: ./data/gate.db
audit_log: ./audit.jsonl
hourly_limits:
  pro: 60
rate_limit:
  failure_policy: fail_closed
audit_sinks:
  jsonl_path: ./mirror.jsonl
  memory: true
cache_ttl_seconds: 60
store_timeout_seconds: 0.5
"""


class TestFindConfig:
    def test_in_start_dir(self, tmp_path: Path):
        (tmp_path / CONFIG_FILENAME).write_text("{}", encoding="utf-8")
        assert find_config(tmp_path) == (tmp_path / CONFIG_FILENAME).resolve()

    def test_in_parent_dir(self, tmp_path: Path):
        (tmp_path / CONFIG_FILENAME).write_text("{}", encoding="utf-8")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_config(nested) == (tmp_path / CONFIG_FILENAME).resolve()

    def test_not_found(self, tmp_path: Path):
        nested = tmp_path / "empty"
        nested.mkdir()
        found = find_config(nested)
        assert found is None or not found.is_relative_to(tmp_path)


class TestLoadConfig:
    def test_full(self, tmp_path: Path):
        path = tmp_path / CONFIG_FILENAME
        path.write_text(FULL_CONFIG, encoding="utf-8")
        cfg = load_config(path)

        base = tmp_path.resolve()
        assert cfg.config_path == path.resolve()
        assert cfg.catalog == str(base / "catalog.yaml")
        assert cfg.database == str(base / "data" / "gate.db")
        assert cfg.audit_log == str(base / "audit.jsonl")
        assert cfg.hourly_limits == {"pro": 60}
        assert cfg.rate_limit == {"failure_policy": "fail_closed"}
        assert cfg.audit_sinks == {"jsonl_path": str(base / "mirror.jsonl"), "memory": True}
        assert cfg.cache_ttl_seconds == 60.0
        assert cfg.store_timeout_seconds == 0.5

    def test_empty_file_gives_defaults(self, tmp_path: Path):
        path = tmp_path / CONFIG_FILENAME
        path.write_text("", encoding="utf-8")
        cfg = load_config(path)
        assert cfg.catalog is None
        assert cfg.cache_ttl_seconds == 300.0

    def test_missing_explicit_path(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_not_a_mapping(self, tmp_path: Path):
        path = tmp_path / CONFIG_FILENAME
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Expected a YAML mapping"):
            load_config(path)

    def test_bad_hourly_limits(self, tmp_path: Path):
        path = tmp_path / CONFIG_FILENAME
        path.write_text("hourly_limits: 5\n", encoding="utf-8")
        with pytest.raises(ValueError, match="hourly_limits"):
            load_config(path)

    def test_auto_discover(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        (tmp_path / CONFIG_FILENAME).write_text("database: ./x.db\n", encoding="utf-8")
        monkeypatch.chdir(tmp_path)
        assert load_config().database == str(tmp_path.resolve() / "x.db")

    def test_nothing_found_gives_defaults(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr("entitlement_gate.config.find_config", lambda start=None: None)
        assert load_config() == GateConfig()

    @pytest.mark.parametrize("key", ["cache_ttl_seconds", "store_timeout_seconds"])
    def test_non_positive_timing_rejected(self, tmp_path: Path, key: str):
        path = tmp_path / CONFIG_FILENAME
        path.write_text(f"{key}: 0\n", encoding="utf-8")
        with pytest.raises(ValueError, match=key):
            load_config(path)
