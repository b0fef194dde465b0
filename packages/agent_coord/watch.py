"""
Watch supervisor: the single poller of the shared event source.

Lifecycle: Idle -> AttemptingLease -> Leading | Rejected; Leading -> Idle on
graceful stop or on a fatal error, releasing the leader marker first.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from agent_coord.config import CoordSettings
from agent_coord.errors import LeaderActiveError, MutexTimeoutError, StoreCorruptedError
from agent_coord.events import EventSource, Responder
from agent_coord.idempotency import IdempotencyGuard, derive_key
from agent_coord.jsonio import append_activity, atomic_write_json, load_json_document, utc_now
from agent_coord.leader import LeaderElection
from agent_coord.liveness import OsProcessLiveness, ProcessLiveness
from agent_coord.models import WatchState
from agent_coord.paths import leader_marker_dir, watch_log_path, watch_state_path
from agent_coord.results import StopStatus

logger = logging.getLogger(__name__)


@dataclass
class PollReport:
    fetched: int = 0
    responded: int = 0
    skipped: int = 0
    failed: int = 0


def load_watch_state(root: Path) -> Optional[WatchState]:
    path = watch_state_path(root)
    data = load_json_document(path)
    if not data:
        return None
    try:
        return WatchState.model_validate(data)
    except ValidationError as e:
        raise StoreCorruptedError(path, f"invalid watch state: {e.error_count()} error(s)") from e


def _save_watch_state(root: Path, state: WatchState) -> None:
    atomic_write_json(watch_state_path(root), state.model_dump(mode="json"))


def _clear_watch_state(root: Path) -> None:
    try:
        watch_state_path(root).unlink()
    except FileNotFoundError:
        pass


class WatchSupervisor:
    def __init__(
        self,
        root: Path,
        *,
        source: EventSource,
        responder: Responder,
        settings: Optional[CoordSettings] = None,
        liveness: Optional[ProcessLiveness] = None,
        guard: Optional[IdempotencyGuard] = None,
        clock: Callable[[], datetime] = utc_now,
        pid: Optional[int] = None,
    ):
        self.root = root
        self.source = source
        self.responder = responder
        self.settings = settings or CoordSettings()
        self.clock = clock
        self.pid = pid if pid is not None else os.getpid()
        self.guard = guard or IdempotencyGuard(root, settings=self.settings)
        self.election = LeaderElection(
            leader_marker_dir(root),
            liveness=liveness or OsProcessLiveness(),
            grace_seconds=self.settings.leader_grace_seconds,
            pid=self.pid,
        )
        self.state = WatchState(watch_pid=self.pid)

    def _flush_pending(self) -> None:
        """Record reactions that were emitted but could not be recorded yet. Never re-emits."""
        for key, reaction_id in list(self.state.pending.items()):
            try:
                self.guard.record_response(key, reaction_id)
            except (MutexTimeoutError, StoreCorruptedError) as e:
                logger.warning("response history still unavailable for %s: %s", key, e)
                return
            del self.state.pending[key]

    def poll_once(self) -> PollReport:
        """
        One pass over new events: skip agent-authored ones, skip those already
        answered, answer the rest, then persist the cursor and check time.

        A reaction that went out but could not be recorded is kept in
        `state.pending` (persisted with the watch state) and only its record
        step is retried on later polls.
        """
        report = PollReport()
        self._flush_pending()
        since = self.state.cursor
        events = self.source.fetch_since(since)
        report.fetched = len(events)

        newest: Optional[datetime] = since
        retry_from: Optional[datetime] = None
        for ev in events:
            if newest is None or ev.created_at > newest:
                newest = ev.created_at
            if ev.from_agent:
                continue

            key = derive_key(ev)
            if key in self.state.pending or self.guard.has_responded(key):
                logger.info("already responded to %s, skipping", ev.id)
                report.skipped += 1
                continue

            logger.info("new event %s from %s in %s", ev.id, ev.sender or "User", ev.conversation_id or "-")
            try:
                reaction_id = self.responder.respond(ev, key)
            except Exception as e:
                # Leave it unrecorded and keep the cursor at or before it so the next poll retries.
                logger.error("responder failed for %s: %s", ev.id, e)
                report.failed += 1
                if retry_from is None or ev.created_at < retry_from:
                    retry_from = ev.created_at
                continue
            if not reaction_id:
                continue
            report.responded += 1
            try:
                self.guard.record_response(key, reaction_id)
            except (MutexTimeoutError, StoreCorruptedError) as e:
                logger.warning("responded to %s but could not record it yet: %s", ev.id, e)
                self.state.pending[key] = reaction_id
                continue
            logger.info("responded to %s (reaction %s)", ev.id, reaction_id)

        cursor = newest
        if retry_from is not None and (cursor is None or retry_from < cursor):
            cursor = retry_from
        self.state = self.state.model_copy(update={"cursor": cursor, "last_checked_at": self.clock()})
        _save_watch_state(self.root, self.state)
        return report

    def _initial_state(self) -> WatchState:
        now = self.clock()
        cursor = now - timedelta(seconds=self.settings.initial_lookback_seconds)
        try:
            prev = load_watch_state(self.root)
        except StoreCorruptedError as e:
            logger.warning("ignoring unreadable watch state: %s", e)
            prev = None
        pending: Dict[str, str] = {}
        if prev is not None:
            pending = dict(prev.pending)
            if prev.cursor is not None:
                # Resume where the previous leader stopped; re-seen events are deduplicated.
                cursor = prev.cursor
        return WatchState(watch_pid=self.pid, started_at=now, last_checked_at=now, cursor=cursor, pending=pending)

    def run(self, stop: Optional[threading.Event] = None, *, max_polls: Optional[int] = None) -> int:
        """
        Become leader and poll until stopped. Raises LeaderActiveError when
        another watcher is alive. Returns the number of completed polls.

        A poll that hits a busy or unreadable shared document is logged and
        retried on the next interval; it never ends the leadership.
        """
        stop = stop or threading.Event()
        polls = 0
        with self.election.leadership():
            append_activity(self.root, actor=f"watch:{self.pid}", action="leader_acquired", pid=self.pid)
            self.state = self._initial_state()
            _save_watch_state(self.root, self.state)

            previous: Dict[int, Any] = {}

            def _handle(_sig: int, _frame: object) -> None:
                stop.set()

            if threading.current_thread() is threading.main_thread():
                for sig in (signal.SIGINT, signal.SIGTERM):
                    previous[sig] = signal.signal(sig, _handle)

            try:
                while not stop.is_set():
                    try:
                        self.poll_once()
                    except (MutexTimeoutError, StoreCorruptedError) as e:
                        logger.error("poll failed, retrying next interval: %s", e)
                    polls += 1
                    if max_polls is not None and polls >= max_polls:
                        break
                    stop.wait(self.settings.poll_interval_seconds)
            finally:
                for sig, handler in previous.items():
                    signal.signal(sig, handler)
                self._flush_pending()
                if self.state.pending:
                    _save_watch_state(self.root, self.state.model_copy(update={"watch_pid": None}))
                else:
                    _clear_watch_state(self.root)
                append_activity(self.root, actor=f"watch:{self.pid}", action="leader_released", pid=self.pid, polls=polls)
        return polls


def _retire_watch_state(root: Path) -> None:
    """Drop the state of a stopped watcher, keeping it when reactions are still unrecorded."""
    try:
        state = load_watch_state(root)
    except StoreCorruptedError as e:
        logger.warning("ignoring unreadable watch state: %s", e)
        state = None
    if state is not None and state.pending:
        _save_watch_state(root, state.model_copy(update={"watch_pid": None}))
        return
    _clear_watch_state(root)


def watch_status(
    root: Path,
    *,
    liveness: Optional[ProcessLiveness] = None,
    clock: Callable[[], datetime] = utc_now,
) -> Dict[str, Any]:
    liveness = liveness or OsProcessLiveness()
    election = LeaderElection(leader_marker_dir(root), liveness=liveness)
    leader = election.read_owner()
    state = load_watch_state(root)

    pid = state.watch_pid if state and state.watch_pid else (leader.pid if leader else None)
    running = bool(pid and liveness.is_alive(pid))
    last_checked = state.last_checked_at if state else None
    age = int((clock() - last_checked).total_seconds()) if last_checked else None
    return {
        "running": running,
        "pid": pid,
        "leader_pid": leader.pid if leader else None,
        "last_checked_at": last_checked.isoformat() if last_checked else None,
        "last_checked_age_sec": age,
        "unrecorded_responses": len(state.pending) if state else 0,
    }


def stop_watcher(
    root: Path,
    *,
    settings: Optional[CoordSettings] = None,
    liveness: Optional[ProcessLiveness] = None,
    force: bool = False,
) -> Tuple[StopStatus, str]:
    """Signal the running watcher and wait for it; clears leftovers of a dead one."""
    settings = settings or CoordSettings()
    liveness = liveness or OsProcessLiveness()
    election = LeaderElection(
        leader_marker_dir(root),
        liveness=liveness,
        grace_seconds=settings.leader_grace_seconds,
    )

    try:
        state = load_watch_state(root)
    except StoreCorruptedError as e:
        logger.warning("ignoring unreadable watch state: %s", e)
        state = None
    leader = election.read_owner()
    pid = state.watch_pid if state and state.watch_pid else (leader.pid if leader else None)

    def _not_running() -> Tuple[StopStatus, str]:
        cleared = election.clear_if_dead()
        _retire_watch_state(root)
        suffix = " (removed stale leader lock)" if cleared else ""
        return StopStatus.NOT_RUNNING, f"watch daemon is not running{suffix}"

    if not pid or not liveness.is_alive(pid):
        return _not_running()

    try:
        os.kill(pid, signal.SIGKILL if force else signal.SIGTERM)
    except ProcessLookupError:
        # Exited between the liveness check and the signal.
        return _not_running()
    except PermissionError:
        return StopStatus.DENIED, f"not permitted to signal PID {pid}"

    deadline = time.time() + settings.stop_timeout_seconds
    while time.time() < deadline:
        if not liveness.is_alive(pid):
            election.clear_if_dead()
            _retire_watch_state(root)
            return StopStatus.STOPPED, f"watch daemon stopped (PID: {pid})"
        time.sleep(0.2)
    return StopStatus.TIMEOUT, f"still running (PID: {pid}); use --force"


def start_background(root: Path, *, extra_args: Optional[List[str]] = None, wait_sec: float = 0.5) -> int:
    """
    Spawn a detached `watch` process and return its pid.

    Raises LeaderActiveError up front when a live leader exists, and when the
    child exits right away (it lost the election).
    """
    election = LeaderElection(leader_marker_dir(root))
    leader = election.current()
    if leader is not None:
        raise LeaderActiveError(leader.pid)

    log_path = watch_log_path(root)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    cmd: List[str] = [sys.executable, "-m", "agent_coord", "watch", "--state-dir", str(root), *(extra_args or []), "watch"]
    with log_path.open("a", encoding="utf-8") as log_f:
        p = subprocess.Popen(
            cmd,
            stdout=log_f,
            stderr=log_f,
            stdin=subprocess.DEVNULL,
            start_new_session=True,
        )

    time.sleep(wait_sec)
    code = p.poll()
    if code is not None:
        current = election.current()
        raise LeaderActiveError(
            current.pid if current else None,
            f"watch process exited immediately (code {code}); see {log_path}",
        )
    return p.pid
