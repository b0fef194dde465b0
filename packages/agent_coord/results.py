from __future__ import annotations

from enum import Enum


class Outcome(str, Enum):
    """
    Result of a coordination call.

    Everything except OK is a normal, recoverable answer: the caller decides
    whether to wait, pick another resource, or escalate.
    """

    OK = "ok"
    CONFLICT = "conflict"
    DENIED = "denied"
    MUTEX_TIMEOUT = "mutex_timeout"
    NOT_REGISTERED = "not_registered"


class LeaseState(str, Enum):
    FREE = "free"
    STALE = "stale"
    LOCKED = "locked"


class StopStatus(str, Enum):
    STOPPED = "stopped"
    NOT_RUNNING = "not_running"
    TIMEOUT = "timeout"
    DENIED = "denied"
