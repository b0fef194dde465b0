from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Set

import pytest

from agent_coord import config as coord_config
from agent_coord import paths as coord_paths
from agent_coord.config import CoordSettings


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeLiveness:
    def __init__(self, alive: Iterable[int] = ()):
        self.alive: Set[int] = set(alive)

    def is_alive(self, handle: int) -> bool:
        return int(handle) in self.alive


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def state_root(tmp_path: Path) -> Path:
    root = tmp_path / "coordination"
    root.mkdir()
    return root


@pytest.fixture()
def fast_settings() -> CoordSettings:
    return CoordSettings(
        mutex_attempts=3,
        mutex_backoff_seconds=0.01,
        document_lock_timeout_seconds=0.5,
        poll_interval_seconds=0.01,
        leader_grace_seconds=5,
        stop_timeout_seconds=1,
    )


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    for name in (
        "AGENT_COORD_AGENT_ID",
        "CLAUDE_AGENT_ID",
        "AGENT_COORD_STATE_DIR",
        "AGENT_COORD_CONFIG",
        "AGENT_COORD_REPO_ROOT",
        "AGENT_COORD_LOCK_TTL",
        "AGENT_COORD_HEARTBEAT_TTL",
        "AGENT_COORD_POLL_INTERVAL",
        "ASYNC_POLL_INTERVAL",
    ):
        monkeypatch.delenv(name, raising=False)
    # Never read the repo's own configs/ during tests.
    monkeypatch.setenv("AGENT_COORD_CONFIG", str(tmp_path / "no-such-config.yaml"))
    coord_config.load_settings.cache_clear()
    coord_paths.repo_root.cache_clear()
    yield
    coord_config.load_settings.cache_clear()
    coord_paths.repo_root.cache_clear()
