"""Project settings for entitlement-gate, read from ``entitlement-gate.yaml``.

The file names the catalog, database and audit log (relative to the file
itself), per-plan hourly overrides, the store failure policy, audit sinks,
and the usage cache and store timings.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

CONFIG_FILENAME = "entitlement-gate.yaml"


@dataclass(frozen=True)
class GateConfig:
    """Parsed entitlement-gate project configuration."""

    config_path: Path | None = None
    catalog: str | None = None
    database: str | None = None
    audit_log: str | None = None
    hourly_limits: dict[str, int] | None = None
    rate_limit: dict[str, Any] | None = None
    audit_sinks: dict[str, Any] | None = None
    cache_ttl_seconds: float = 300.0
    store_timeout_seconds: float = 2.0


def find_config(start: Path | None = None) -> Path | None:
    """Nearest ``entitlement-gate.yaml`` at or above *start* (default: cwd)."""
    here = (start or Path.cwd()).resolve()
    for directory in (here, *here.parents):
        candidate = directory / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
    return None


def load_config(path: str | Path | None = None) -> GateConfig:
    """Load the project config.

    An explicit *path* must exist. Without one the nearest discovered file
    is used, and with neither every setting keeps its default.
    """
    if path is None:
        found = find_config()
        return _parse_config(found) if found is not None else GateConfig()

    config_path = Path(path).resolve()
    if not config_path.is_file():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    return _parse_config(config_path)


def _parse_config(config_path: Path) -> GateConfig:
    """Read and parse a YAML config file, resolving relative paths."""
    text = config_path.read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        raise ValueError(msg)

    base = config_path.parent

    def _resolve(key: str) -> str | None:
        val = data.get(key)
        if val is None:
            return None
        return str((base / val).resolve())

    hourly = data.get("hourly_limits")
    if hourly is not None:
        if not isinstance(hourly, dict):
            msg = f"'hourly_limits' must be a mapping of plan id to limit in {config_path}"
            raise ValueError(msg)
        hourly = {str(k): int(v) for k, v in hourly.items()}

    sinks = data.get("audit_sinks")
    if isinstance(sinks, dict) and sinks.get("jsonl_path") is not None:
        sinks = {**sinks, "jsonl_path": str((base / sinks["jsonl_path"]).resolve())}

    return GateConfig(
        config_path=config_path,
        catalog=_resolve("catalog"),
        database=_resolve("database"),
        audit_log=_resolve("audit_log"),
        hourly_limits=hourly,
        rate_limit=data.get("rate_limit"),
        audit_sinks=sinks,
        cache_ttl_seconds=_seconds(data, "cache_ttl_seconds", 300.0, config_path),
        store_timeout_seconds=_seconds(data, "store_timeout_seconds", 2.0, config_path),
    )


def _seconds(data: dict[str, Any], key: str, default: float, config_path: Path) -> float:
    value = float(data.get(key, default))
    if value <= 0:
        raise ValueError(f"'{key}' must be positive in {config_path}, got {value}")
    return value
