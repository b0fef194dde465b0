"""
File-backed coordination for cooperating agent processes on one host:
resource leases, an advisory activity registry, a single watch leader and
an idempotency guard for the watcher's reactions.
"""

from agent_coord.config import CoordSettings, load_settings
from agent_coord.errors import (
    ConfigError,
    CoordinationError,
    LeaderActiveError,
    MutexTimeoutError,
    NotRegisteredError,
    StoreCorruptedError,
)
from agent_coord.idempotency import IdempotencyGuard, derive_key
from agent_coord.leader import LeaderElection
from agent_coord.lock_manager import LockManager
from agent_coord.registry import CoordinationRegistry
from agent_coord.results import LeaseState, Outcome
from agent_coord.watch import WatchSupervisor

__all__ = [
    "ConfigError",
    "CoordSettings",
    "CoordinationError",
    "CoordinationRegistry",
    "IdempotencyGuard",
    "LeaderActiveError",
    "LeaderElection",
    "LeaseState",
    "LockManager",
    "MutexTimeoutError",
    "NotRegisteredError",
    "Outcome",
    "StoreCorruptedError",
    "WatchSupervisor",
    "derive_key",
    "load_settings",
]
