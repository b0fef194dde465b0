from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from agent_coord.config import CoordSettings
from agent_coord.errors import MutexTimeoutError
from agent_coord.jsonio import append_activity, utc_now
from agent_coord.lease_store import LeaseStore
from agent_coord.models import Lease
from agent_coord.mutex import mutex_token
from agent_coord.paths import locks_dir
from agent_coord.results import LeaseState, Outcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckResult:
    resource: str
    state: LeaseState
    owner: Optional[str] = None
    purpose: Optional[str] = None
    acquired_at: Optional[datetime] = None

    @property
    def is_free(self) -> bool:
        return self.state is not LeaseState.LOCKED

    def status_line(self) -> str:
        if self.state is LeaseState.LOCKED:
            return f"LOCKED by {self.owner} ({self.purpose or 'unknown'})"
        return self.state.name


@dataclass(frozen=True)
class LockResult:
    outcome: Outcome
    resource: str
    owner: Optional[str] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK


@dataclass(frozen=True)
class LeaseView:
    resource: str
    owner: str
    purpose: str
    acquired_at: datetime
    state: str  # "active" | "stale"
    age_seconds: float


class LockManager:
    """
    Lease-based mutual exclusion over named resources.

    Every mutation runs inside the resource's mutex token:
    read the current lease, decide, write, release the token. Staleness is
    evaluated lazily against `lock_ttl_seconds`; nothing has to reap leases for
    the answers to be correct.
    """

    def __init__(
        self,
        root: Path,
        agent_id: str,
        *,
        settings: Optional[CoordSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.root = root
        self.agent_id = agent_id
        self.settings = settings or CoordSettings()
        self.clock = clock
        self.store = LeaseStore(locks_dir(root))

    @property
    def ttl_seconds(self) -> float:
        return self.settings.lock_ttl_seconds

    def _token(self, resource: str):
        return mutex_token(
            self.store.mutex_path_for(resource),
            attempts=self.settings.mutex_attempts,
            backoff=self.settings.mutex_backoff_seconds,
        )

    def check(self, resource: str) -> CheckResult:
        lease = self.store.read(resource)
        if lease is None:
            return CheckResult(resource=resource, state=LeaseState.FREE)
        if lease.is_stale(self.clock(), self.ttl_seconds):
            return CheckResult(
                resource=resource,
                state=LeaseState.STALE,
                owner=lease.owner,
                purpose=lease.purpose,
                acquired_at=lease.acquired_at,
            )
        return CheckResult(
            resource=resource,
            state=LeaseState.LOCKED,
            owner=lease.owner,
            purpose=lease.purpose,
            acquired_at=lease.acquired_at,
        )

    def acquire(self, resource: str, purpose: str = "editing") -> LockResult:
        try:
            with self._token(resource):
                now = self.clock()
                cur = self.store.read(resource)
                if cur is not None and not cur.is_stale(now, self.ttl_seconds) and cur.owner != self.agent_id:
                    return LockResult(
                        outcome=Outcome.CONFLICT,
                        resource=resource,
                        owner=cur.owner,
                        message=f"File locked by {cur.owner}",
                    )
                reclaimed_from = cur.owner if cur is not None and cur.owner != self.agent_id else None
                lease = Lease(resource=resource, owner=self.agent_id, purpose=purpose or "editing", acquired_at=now)
                self.store.write(lease)
        except MutexTimeoutError as e:
            logger.info("acquire %s: %s", resource, e)
            return LockResult(
                outcome=Outcome.MUTEX_TIMEOUT,
                resource=resource,
                message=f"Could not acquire mutex after {e.attempts} attempts",
            )

        if reclaimed_from:
            logger.info("reclaimed stale lease on %s from %s", resource, reclaimed_from)
        append_activity(
            self.root,
            actor=self.agent_id,
            action="lease_acquired",
            resource=resource,
            purpose=lease.purpose,
            reclaimed_from=reclaimed_from,
        )
        return LockResult(outcome=Outcome.OK, resource=resource, owner=self.agent_id, message=f"ACQUIRED lock on {resource}")

    def release(self, resource: str) -> LockResult:
        try:
            with self._token(resource):
                cur = self.store.read(resource)
                if cur is None:
                    return LockResult(outcome=Outcome.OK, resource=resource, message="No lock to release")
                if cur.owner != self.agent_id and not cur.is_stale(self.clock(), self.ttl_seconds):
                    return LockResult(
                        outcome=Outcome.DENIED,
                        resource=resource,
                        owner=cur.owner,
                        message=f"Cannot release lock owned by {cur.owner}",
                    )
                self.store.delete(resource)
        except MutexTimeoutError as e:
            logger.info("release %s: %s", resource, e)
            return LockResult(
                outcome=Outcome.MUTEX_TIMEOUT,
                resource=resource,
                message="Could not acquire mutex for release",
            )

        append_activity(self.root, actor=self.agent_id, action="lease_released", resource=resource, owner=cur.owner)
        return LockResult(outcome=Outcome.OK, resource=resource, owner=cur.owner, message=f"RELEASED lock on {resource}")

    def status(self) -> List[LeaseView]:
        now = self.clock()
        leases, _unreadable = self.store.scan()
        return [
            LeaseView(
                resource=lz.resource,
                owner=lz.owner,
                purpose=lz.purpose,
                acquired_at=lz.acquired_at,
                state="stale" if lz.is_stale(now, self.ttl_seconds) else "active",
                age_seconds=lz.age_seconds(now),
            )
            for lz in leases
        ]

    def cleanup(self) -> int:
        """Remove stale leases; returns how many were removed."""
        removed = 0
        leases, _unreadable = self.store.scan()
        for lz in leases:
            if not lz.is_stale(self.clock(), self.ttl_seconds):
                continue
            try:
                with self._token(lz.resource):
                    # Re-read under the token: the lease may have been re-acquired meanwhile.
                    cur = self.store.read(lz.resource)
                    if cur is None or not cur.is_stale(self.clock(), self.ttl_seconds):
                        continue
                    self.store.delete(lz.resource)
            except MutexTimeoutError as e:
                logger.warning("cleanup skipped %s: %s", lz.resource, e)
                continue
            removed += 1
            logger.info("removed stale lock: %s (owner %s)", lz.resource, lz.owner)

        if removed:
            append_activity(self.root, actor=self.agent_id, action="leases_cleaned", removed=removed)
        return removed
