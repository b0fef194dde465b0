from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agent_coord import paths as coord_paths
from agent_coord.errors import ConfigError


def _default_config_path() -> Path:
    raw = (os.getenv("AGENT_COORD_CONFIG") or "").strip()
    if raw:
        return Path(raw).expanduser()
    return coord_paths.repo_root() / "configs" / "agent_coord.yaml"


def _local_config_path(base: Path) -> Path:
    return base.with_name(base.stem + ".local" + base.suffix)


class CoordSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    lock_ttl_seconds: float = Field(default=600, gt=0)
    heartbeat_ttl_seconds: float = Field(default=900, gt=0)
    mutex_attempts: int = Field(default=50, ge=1)
    mutex_backoff_seconds: float = Field(default=0.1, ge=0)
    document_lock_timeout_seconds: float = Field(default=5, gt=0)
    poll_interval_seconds: float = Field(default=3, gt=0)
    leader_grace_seconds: float = Field(default=5, ge=0)
    stop_timeout_seconds: float = Field(default=5, gt=0)
    initial_lookback_seconds: float = Field(default=10, ge=0)
    state_dir: Optional[str] = None

    def state_root(self) -> Path:
        return coord_paths.state_root(self.state_dir)


# env var -> settings field (first match wins)
_ENV_OVERRIDES = {
    "lock_ttl_seconds": ("AGENT_COORD_LOCK_TTL",),
    "heartbeat_ttl_seconds": ("AGENT_COORD_HEARTBEAT_TTL",),
    "poll_interval_seconds": ("AGENT_COORD_POLL_INTERVAL", "ASYNC_POLL_INTERVAL"),
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = dict(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)  # type: ignore[arg-type]
        else:
            out[k] = v
    return out


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"failed to read config {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"config must be a mapping: {path}")
    # Allow both a flat file and one nested under `coordination:`.
    nested = raw.get("coordination")
    return nested if isinstance(nested, dict) else raw


@lru_cache(maxsize=1)
def load_settings() -> CoordSettings:
    """
    Load coordination settings (no secrets).

    Base: configs/agent_coord.yaml (or env AGENT_COORD_CONFIG)
    Local: configs/agent_coord.local.yaml (override; not tracked)
    Env: AGENT_COORD_LOCK_TTL / AGENT_COORD_HEARTBEAT_TTL / AGENT_COORD_POLL_INTERVAL
    """
    base_path = _default_config_path()
    merged = _deep_merge(_read_yaml(base_path), _read_yaml(_local_config_path(base_path)))

    for field, names in _ENV_OVERRIDES.items():
        for name in names:
            raw = (os.getenv(name) or "").strip()
            if raw:
                merged[field] = raw
                break

    try:
        return CoordSettings.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"invalid coordination settings: {e}") from e
