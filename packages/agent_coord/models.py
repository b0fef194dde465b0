from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore")

    schema_version: int = 1


class Lease(_Record):
    kind: Literal["lease"] = "lease"
    resource: str = Field(..., min_length=1)
    owner: str = Field(..., min_length=1)
    purpose: str = "editing"
    acquired_at: datetime

    @field_validator("acquired_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    def age_seconds(self, now: datetime) -> float:
        return (now - self.acquired_at).total_seconds()

    def is_stale(self, now: datetime, ttl_seconds: float) -> bool:
        return self.age_seconds(now) > ttl_seconds


class AgentRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    task: str = ""
    resources: List[str] = Field(default_factory=list)
    started_at: datetime
    heartbeat_at: datetime

    @field_validator("started_at", "heartbeat_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    @field_validator("resources")
    @classmethod
    def _clean_resources(cls, v: List[str]) -> List[str]:
        out: List[str] = []
        for item in v:
            s = str(item).strip()
            if s and s not in out:
                out.append(s)
        return out

    def heartbeat_age_seconds(self, now: datetime) -> float:
        return (now - self.heartbeat_at).total_seconds()

    def is_stale(self, now: datetime, ttl_seconds: float) -> bool:
        return self.heartbeat_age_seconds(now) > ttl_seconds


class LeaderLease(_Record):
    """Owner record kept inside the leader marker directory."""

    kind: Literal["leader"] = "leader"
    resource: str = "watch-leader"
    pid: int
    hostname: str = ""
    started_at: datetime

    @field_validator("started_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class ResponseRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    key: str
    reaction_id: str
    recorded_at: datetime


class WatchState(_Record):
    kind: Literal["watch_state"] = "watch_state"
    watch_pid: Optional[int] = None
    started_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None
    cursor: Optional[datetime] = None
    # idempotency key -> reaction id, emitted but not yet in the response history
    pending: Dict[str, str] = Field(default_factory=dict)
