from __future__ import annotations

from pathlib import Path
from typing import Optional


class CoordinationError(Exception):
    """Base class for coordination failures."""


class ConfigError(CoordinationError):
    pass


class MutexTimeoutError(CoordinationError):
    """A mutual-exclusion token could not be obtained within the retry bound."""

    def __init__(self, target: Path, attempts: int):
        super().__init__(f"could not acquire mutex after {attempts} attempts: {target}")
        self.target = target
        self.attempts = attempts


class StoreCorruptedError(CoordinationError):
    """A shared document exists but cannot be decoded into valid records."""

    def __init__(self, path: Path, reason: str):
        super().__init__(f"unreadable document {path}: {reason}")
        self.path = path
        self.reason = reason


class NotRegisteredError(CoordinationError):
    def __init__(self, agent_id: str):
        super().__init__(f"agent is not registered: {agent_id}")
        self.agent_id = agent_id


class LeaderActiveError(CoordinationError):
    def __init__(self, pid: Optional[int], message: Optional[str] = None):
        super().__init__(message or f"another leader is active (PID: {pid})")
        self.pid = pid
