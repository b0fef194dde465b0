"""
Idempotency guard for reactions to observed events.

Keys are deterministic, so polling the same event again (or restarting the
watcher) yields the same key and the reaction is suppressed. The
check-then-emit sequence is not atomic against a second copy of itself:
leader election already guarantees a single watcher.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol

from agent_coord.config import CoordSettings
from agent_coord.errors import StoreCorruptedError
from agent_coord.jsonio import SCHEMA_VERSION, append_activity, load_json_document, locked_update_json, now_iso_utc
from agent_coord.models import ResponseRecord
from agent_coord.paths import responses_path

logger = logging.getLogger(__name__)

RESPONSE_KEY_PREFIX = "response-to-"


class _HasId(Protocol):
    id: str


def derive_key(event: Optional[_HasId] = None, *, key: Optional[str] = None) -> str:
    """
    Caller-supplied key for directly triggered actions, otherwise
    "response-to-<event id>".
    """
    if key is not None and str(key).strip():
        return str(key).strip()
    if event is None or not str(getattr(event, "id", "") or "").strip():
        raise ValueError("derive_key needs an event with an id or an explicit key")
    return f"{RESPONSE_KEY_PREFIX}{str(event.id).strip()}"


class IdempotencyGuard:
    def __init__(self, root: Path, *, settings: Optional[CoordSettings] = None, actor: str = "watch"):
        self.root = root
        self.path = responses_path(root)
        self.settings = settings or CoordSettings()
        self.actor = actor

    def _responses(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        responses = doc.get("responses", {})
        if not isinstance(responses, dict):
            raise StoreCorruptedError(self.path, "`responses` is not an object")
        return responses

    def has_responded(self, key: str) -> bool:
        return key in self._responses(load_json_document(self.path))

    def get(self, key: str) -> Optional[ResponseRecord]:
        rec = self._responses(load_json_document(self.path)).get(key)
        if not isinstance(rec, dict):
            return None
        return ResponseRecord.model_validate({"key": key, **rec})

    def record_response(self, key: str, reaction_id: str) -> bool:
        """
        Record that `key` produced `reaction_id`. Call only after the reaction
        was durably emitted. Returns False when the key was already recorded
        (the first record wins).
        """
        outcome = {"new": False}

        def _update(cur: Dict[str, Any]) -> Dict[str, Any]:
            responses = self._responses(cur)
            cur.setdefault("schema_version", SCHEMA_VERSION)
            cur.setdefault("kind", "response_history")
            if key in responses:
                return cur
            responses[key] = {"reaction_id": str(reaction_id), "recorded_at": now_iso_utc()}
            cur["responses"] = responses
            outcome["new"] = True
            return cur

        locked_update_json(self.path, _update, timeout=self.settings.document_lock_timeout_seconds)
        if outcome["new"]:
            append_activity(self.root, actor=self.actor, action="response_recorded", key=key, reaction_id=str(reaction_id))
        else:
            logger.warning("response for %s was already recorded; keeping the first", key)
        return outcome["new"]

    def run_once(self, key: str, action: Callable[[], Optional[str]]) -> Optional[str]:
        """
        Perform a directly triggered action at most once per key.

        `action` returns the id of what it emitted (or None when it emitted
        nothing, in which case nothing is recorded and a later call may retry).
        Returns the new reaction id, or None when skipped or nothing was emitted.
        """
        if self.has_responded(key):
            logger.info("already acted on %s, skipping", key)
            return None
        reaction_id = action()
        if reaction_id:
            self.record_response(key, reaction_id)
        return reaction_id
