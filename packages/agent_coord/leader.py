"""
Single-leader election for the watch process.

The leader marker is a directory created with `os.mkdir` holding an
`owner.json` with the leader's pid. Unlike resource leases there is no
age-based expiry: a leader legitimately runs for days, so a dead leader is
detected by probing its pid, not by the age of its marker.

Every change to the marker (create, reclaim, release, clear) happens under
a mutex token on a sidecar file next to it, so two starters can never
both decide the same dead marker is theirs to replace.
"""

from __future__ import annotations

import atexit
import logging
import os
import shutil
import socket
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from pydantic import ValidationError

from agent_coord.errors import LeaderActiveError, MutexTimeoutError, StoreCorruptedError
from agent_coord.jsonio import atomic_write_json, load_json_document, utc_now
from agent_coord.liveness import OsProcessLiveness, ProcessLiveness
from agent_coord.models import LeaderLease
from agent_coord.mutex import mutex_token

logger = logging.getLogger(__name__)

OWNER_FILE = "owner.json"
GUARD_SUFFIX = ".mutex"


class LeaderElection:
    def __init__(
        self,
        marker_dir: Path,
        *,
        liveness: Optional[ProcessLiveness] = None,
        grace_seconds: float = 5.0,
        pid: Optional[int] = None,
        guard_attempts: int = 50,
        guard_backoff: float = 0.1,
    ):
        self.marker_dir = marker_dir
        self.guard_path = marker_dir.with_name(marker_dir.name + GUARD_SUFFIX)
        self.liveness = liveness or OsProcessLiveness()
        self.grace_seconds = grace_seconds
        self.pid = pid if pid is not None else os.getpid()
        self.guard_attempts = guard_attempts
        self.guard_backoff = guard_backoff
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _guard(self):
        return mutex_token(self.guard_path, attempts=self.guard_attempts, backoff=self.guard_backoff)

    def read_owner(self) -> Optional[LeaderLease]:
        """Owner record of the marker; None when missing or not (yet) readable."""
        try:
            data = load_json_document(self.marker_dir / OWNER_FILE)
        except StoreCorruptedError as e:
            logger.debug("leader owner record unreadable: %s", e)
            return None
        if not data:
            return None
        try:
            return LeaderLease.model_validate(data)
        except ValidationError:
            return None

    def current(self) -> Optional[LeaderLease]:
        """The live leader, if any."""
        owner = self.read_owner()
        if owner is not None and self.liveness.is_alive(owner.pid):
            return owner
        return None

    def _marker_age(self) -> Optional[float]:
        try:
            return time.time() - self.marker_dir.stat().st_mtime
        except FileNotFoundError:
            return None

    def _try_create(self) -> bool:
        self.marker_dir.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.mkdir(self.marker_dir)
        except FileExistsError:
            return False
        return True

    def _remove_marker(self) -> None:
        try:
            shutil.rmtree(self.marker_dir)
        except FileNotFoundError:
            pass

    def acquire(self) -> LeaderLease:
        """
        Become the leader or raise LeaderActiveError.

        An existing marker whose pid is dead is removed and acquisition is
        retried once. A marker without an owner record (its creator died
        before writing one) is respected until `grace_seconds` have passed.
        """
        try:
            with self._guard():
                return self._acquire_guarded()
        except MutexTimeoutError as e:
            raise LeaderActiveError(None, "leader election is busy; try again") from e

    def _acquire_guarded(self) -> LeaderLease:
        for attempt in range(2):
            if self._try_create():
                lease = LeaderLease(pid=self.pid, hostname=socket.gethostname(), started_at=utc_now())
                atomic_write_json(self.marker_dir / OWNER_FILE, lease.model_dump(mode="json"))
                self._held = True
                logger.info("acquired leader lock (PID: %s)", self.pid)
                return lease

            owner = self.read_owner()
            if owner is None:
                age = self._marker_age()
                if age is not None and age <= self.grace_seconds:
                    raise LeaderActiveError(None, "another leader is acquiring the lock")
            elif owner.pid == self.pid:
                self._held = True
                return owner
            elif self.liveness.is_alive(owner.pid):
                raise LeaderActiveError(owner.pid)

            if attempt == 0:
                logger.warning(
                    "removing stale leader lock (PID: %s)",
                    owner.pid if owner is not None else "unknown",
                )
                self._remove_marker()

        raise LeaderActiveError(None, "could not acquire leader lock (race condition)")

    def release(self) -> bool:
        """Remove the marker if this process still owns it."""
        if not self._held:
            return False
        self._held = False
        try:
            with self._guard():
                owner = self.read_owner()
                if owner is not None and owner.pid != self.pid:
                    logger.warning("leader marker now owned by PID %s; leaving it", owner.pid)
                    return False
                self._remove_marker()
        except MutexTimeoutError as e:
            # Left for the next starter: our pid is dead by then and the marker is reclaimed.
            logger.warning("could not release leader lock: %s", e)
            return False
        logger.info("released leader lock (PID: %s)", self.pid)
        return True

    def clear_if_dead(self) -> bool:
        """Remove a marker left behind by a dead leader. Used by `stop`."""
        with self._guard():
            owner = self.read_owner()
            if owner is not None and self.liveness.is_alive(owner.pid):
                return False
            age = self._marker_age()
            if age is None:
                return False
            if owner is None and age <= self.grace_seconds:
                return False
            self._remove_marker()
            return True

    @contextmanager
    def leadership(self) -> Iterator[LeaderLease]:
        lease = self.acquire()
        # atexit covers interpreter shutdown paths that skip the finally below.
        atexit.register(self.release)
        try:
            yield lease
        finally:
            self.release()
            atexit.unregister(self.release)
