"""
External collaborators of the watch loop: where events come from and how a
reaction is emitted.

The watcher only depends on the two protocols. The inbox/outbox
implementations are file-backed defaults: drop `*.json` event files into
`watch/inbox/`, reactions appear as `resp__*.json` in `watch/outbox/`.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from agent_coord.jsonio import atomic_write_json, now_iso_utc
from agent_coord.models import as_utc
from agent_coord.paths import resource_stem

logger = logging.getLogger(__name__)


class Event(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    created_at: datetime
    conversation_id: Optional[str] = None
    sender: Optional[str] = None
    content: str = ""
    from_agent: bool = False

    @field_validator("created_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return as_utc(v)


class EventSource(Protocol):
    def fetch_since(self, since: Optional[datetime]) -> List[Event]:
        """Events created at or after `since` (all when None), oldest first."""


class Responder(Protocol):
    def respond(self, event: Event, key: str) -> Optional[str]:
        """Emit a reaction to `event`; return its id, or None if nothing was sent."""


class InboxEventSource:
    def __init__(self, directory: Path):
        self.directory = directory

    def fetch_since(self, since: Optional[datetime]) -> List[Event]:
        if not self.directory.exists():
            return []
        out: List[Event] = []
        for fp in sorted(self.directory.glob("*.json")):
            try:
                data = json.loads(fp.read_text(encoding="utf-8"))
                event = Event.model_validate(data)
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                logger.warning("skipping unreadable event file %s: %s", fp.name, e)
                continue
            if since is not None and event.created_at < since:
                continue
            out.append(event)
        out.sort(key=lambda ev: (ev.created_at, ev.id))
        return out


def default_compose(event: Event) -> str:
    who = event.sender or "User"
    preview = event.content.strip().replace("\n", " ")[:120]
    return f"Got it, {who}. Following up on: {preview}" if preview else f"Got it, {who}."


class OutboxResponder:
    def __init__(
        self,
        directory: Path,
        *,
        compose: Callable[[Event], Optional[str]] = default_compose,
        source_agent: str = "agent-watch",
    ):
        self.directory = directory
        self.compose = compose
        self.source_agent = source_agent

    def respond(self, event: Event, key: str) -> Optional[str]:
        text = self.compose(event)
        if not text:
            return None
        reaction_id = str(uuid.uuid4())
        payload = {
            "schema_version": 1,
            "kind": "reaction",
            "id": reaction_id,
            "conversation_id": event.conversation_id,
            "content": text,
            "is_from_agent": True,
            "created_at": now_iso_utc(),
            "agent_context": {
                "idempotency_key": key,
                "trigger_event_id": event.id,
                "source_agent": self.source_agent,
            },
        }
        atomic_write_json(self.directory / f"resp__{resource_stem(key)}.json", payload)
        return reaction_id
