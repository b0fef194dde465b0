from __future__ import annotations

from pathlib import Path

import pytest

from agent_coord import config as coord_config
from agent_coord.config import CoordSettings, load_settings
from agent_coord.errors import ConfigError


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_without_config_file():
    s = load_settings()
    assert s == CoordSettings()
    assert s.lock_ttl_seconds == 600
    assert s.heartbeat_ttl_seconds == 900
    assert s.mutex_attempts == 50
    assert s.poll_interval_seconds == 3


def test_base_and_local_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    base = _write(tmp_path / "agent_coord.yaml", "coordination:\n  lock_ttl_seconds: 120\n  poll_interval_seconds: 7\n")
    _write(tmp_path / "agent_coord.local.yaml", "coordination:\n  poll_interval_seconds: 1.5\n")
    monkeypatch.setenv("AGENT_COORD_CONFIG", str(base))
    coord_config.load_settings.cache_clear()

    s = load_settings()
    assert s.lock_ttl_seconds == 120
    assert s.poll_interval_seconds == 1.5


def test_flat_file_is_accepted(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    base = _write(tmp_path / "c.yaml", "heartbeat_ttl_seconds: 60\n")
    monkeypatch.setenv("AGENT_COORD_CONFIG", str(base))
    coord_config.load_settings.cache_clear()
    assert load_settings().heartbeat_ttl_seconds == 60


def test_env_overrides_win(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    base = _write(tmp_path / "c.yaml", "coordination:\n  lock_ttl_seconds: 120\n")
    monkeypatch.setenv("AGENT_COORD_CONFIG", str(base))
    monkeypatch.setenv("AGENT_COORD_LOCK_TTL", "30")
    monkeypatch.setenv("ASYNC_POLL_INTERVAL", "9")
    coord_config.load_settings.cache_clear()

    s = load_settings()
    assert s.lock_ttl_seconds == 30
    assert s.poll_interval_seconds == 9


def test_invalid_values_raise_config_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("AGENT_COORD_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("AGENT_COORD_HEARTBEAT_TTL", "soon")
    coord_config.load_settings.cache_clear()
    with pytest.raises(ConfigError):
        load_settings()


def test_malformed_yaml_raises_config_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    base = _write(tmp_path / "c.yaml", "coordination: [unclosed\n")
    monkeypatch.setenv("AGENT_COORD_CONFIG", str(base))
    coord_config.load_settings.cache_clear()
    with pytest.raises(ConfigError):
        load_settings()

    _write(base, "- just\n- a list\n")
    coord_config.load_settings.cache_clear()
    with pytest.raises(ConfigError):
        load_settings()


def test_repo_config_file_matches_defaults(monkeypatch: pytest.MonkeyPatch):
    from agent_coord import paths

    repo_cfg = paths.repo_root() / "configs" / "agent_coord.yaml"
    monkeypatch.setenv("AGENT_COORD_CONFIG", str(repo_cfg))
    coord_config.load_settings.cache_clear()
    s = load_settings()
    assert s.model_dump(exclude={"state_dir"}) == CoordSettings().model_dump(exclude={"state_dir"})
    assert s.state_dir == "workspaces/coordination"
