from __future__ import annotations

import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Callable, Dict, List

import pytest

from agent_coord.config import CoordSettings
from agent_coord.leader import LeaderElection
from agent_coord.lock_manager import LockManager
from agent_coord.liveness import OsProcessLiveness
from agent_coord.paths import leader_marker_dir, watch_state_path
from agent_coord.results import Outcome
from agent_coord.watch import load_watch_state

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals and sessions")

PACKAGES = Path(__file__).resolve().parents[1] / "packages"

_HOLD_MUTEX = """
import sys, time
from pathlib import Path
from agent_coord.mutex import mutex_token
held = mutex_token(Path(sys.argv[1]), attempts=1)
held.__enter__()
print("held", flush=True)
time.sleep(60)
"""

_PRINT_AGENT_ID = """
import sys
from pathlib import Path
from agent_coord.identity import resolve_agent_id
print(resolve_agent_id(Path(sys.argv[1])))
"""


def _env(tmp_path: Path) -> Dict[str, str]:
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(p for p in (str(PACKAGES), env.get("PYTHONPATH", "")) if p)
    env["AGENT_COORD_CONFIG"] = str(tmp_path / "no-such-config.yaml")
    env["AGENT_COORD_POLL_INTERVAL"] = "0.1"
    for name in ("AGENT_COORD_AGENT_ID", "CLAUDE_AGENT_ID", "AGENT_COORD_STATE_DIR"):
        env.pop(name, None)
    return env


def _cli(*argv: str) -> List[str]:
    return [sys.executable, "-m", "agent_coord", *argv]


def _wait_for(predicate: Callable[[], bool], timeout: float = 15.0) -> None:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return
        time.sleep(0.05)
    raise AssertionError("condition not reached in time")


def _start_watcher(root: Path, env: Dict[str, str]) -> subprocess.Popen:
    return subprocess.Popen(
        _cli("watch", "--state-dir", str(root), "watch"),
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
    )


def _polling(root: Path, pid: int) -> Callable[[], bool]:
    """True once `pid` leads and has finished a poll (its signal handlers are in place)."""

    def _check() -> bool:
        owner = LeaderElection(leader_marker_dir(root)).read_owner()
        if owner is None or owner.pid != pid:
            return False
        state = load_watch_state(root)
        return bool(state and state.watch_pid == pid and state.last_checked_at and state.last_checked_at != state.started_at)

    return _check


def test_sigterm_releases_leader_lock(state_root: Path, tmp_path: Path):
    p = _start_watcher(state_root, _env(tmp_path))
    try:
        _wait_for(_polling(state_root, p.pid))
        p.send_signal(signal.SIGTERM)
        out, _ = p.communicate(timeout=15)
    finally:
        if p.poll() is None:
            p.kill()
            p.wait()

    assert p.returncode == 0, out
    assert "released leader lock" in out
    assert not leader_marker_dir(state_root).exists()
    assert not watch_state_path(state_root).exists()


def test_killed_watcher_is_replaced(state_root: Path, tmp_path: Path):
    env = _env(tmp_path)
    first = _start_watcher(state_root, env)
    third = None
    try:
        _wait_for(_polling(state_root, first.pid))

        second = subprocess.run(
            _cli("watch", "--state-dir", str(state_root), "watch"),
            env=env,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=30,
        )
        assert second.returncode == 1
        assert f"already running (PID: {first.pid})" in second.stdout

        first.kill()
        first.wait(timeout=15)
        assert leader_marker_dir(state_root).exists()
        assert not OsProcessLiveness().is_alive(first.pid)

        third = _start_watcher(state_root, env)
        _wait_for(_polling(state_root, third.pid))
        assert LeaderElection(leader_marker_dir(state_root)).current().pid == third.pid

        third.send_signal(signal.SIGTERM)
        third.communicate(timeout=15)
        assert third.returncode == 0
        assert not leader_marker_dir(state_root).exists()
    finally:
        for p in (first, third):
            if p is not None and p.poll() is None:
                p.kill()
                p.wait()
        first.stdout.close()


def test_concurrent_processes_acquire_single_lease(state_root: Path, tmp_path: Path):
    env = _env(tmp_path)
    procs = [
        subprocess.Popen(
            _cli("lock", "--state-dir", str(state_root), "--agent-id", f"agent-{i}", "acquire", "shared.py"),
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
        for i in range(6)
    ]
    outputs = [p.communicate(timeout=60)[0] for p in procs]

    winners = [i for i, p in enumerate(procs) if p.returncode == 0]
    assert len(winners) == 1, outputs
    assert all(p.returncode == 1 for i, p in enumerate(procs) if i != winners[0])
    assert outputs[winners[0]].startswith("ACQUIRED lock on shared.py")
    assert LockManager(state_root, "observer").check("shared.py").owner == f"agent-{winners[0]}"


def test_killed_mutex_holder_does_not_wedge_resource(state_root: Path, tmp_path: Path):
    settings = CoordSettings(mutex_attempts=3, mutex_backoff_seconds=0.01)
    mgr = LockManager(state_root, "agent-a", settings=settings)
    token = mgr.store.mutex_path_for("shared.py")

    holder = subprocess.Popen(
        [sys.executable, "-c", _HOLD_MUTEX, str(token)],
        env=_env(tmp_path),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        text=True,
    )
    try:
        assert holder.stdout.readline().strip() == "held"
        assert mgr.acquire("shared.py").outcome is Outcome.MUTEX_TIMEOUT
    finally:
        holder.kill()
        holder.wait(timeout=15)
        holder.stdout.close()

    assert mgr.acquire("shared.py").outcome is Outcome.OK


def _agent_id_in_subprocess(root: Path, env: Dict[str, str], *, new_session: bool) -> str:
    res = subprocess.run(
        [sys.executable, "-c", _PRINT_AGENT_ID, str(root)],
        env=env,
        stdin=subprocess.DEVNULL,
        capture_output=True,
        text=True,
        timeout=30,
        start_new_session=new_session,
    )
    assert res.returncode == 0, res.stderr
    return res.stdout.strip()


def test_non_tty_agents_in_separate_sessions_get_distinct_ids(state_root: Path, tmp_path: Path):
    env = _env(tmp_path)
    first = _agent_id_in_subprocess(state_root, env, new_session=True)
    second = _agent_id_in_subprocess(state_root, env, new_session=True)
    assert first and second
    assert first != second

    # Invocations from one session (one agent's shell) keep a stable id.
    a = _agent_id_in_subprocess(state_root, env, new_session=False)
    b = _agent_id_in_subprocess(state_root, env, new_session=False)
    assert a == b
