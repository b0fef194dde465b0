from __future__ import annotations

import logging
import os
import socket
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional

from agent_coord.errors import CoordinationError
from agent_coord.jsonio import load_json_document, locked_update_json, now_iso_utc
from agent_coord.paths import identities_path

logger = logging.getLogger(__name__)

_ENV_NAMES = ("AGENT_COORD_AGENT_ID", "CLAUDE_AGENT_ID")


def _env_agent_id() -> Optional[str]:
    for name in _ENV_NAMES:
        raw = (os.getenv(name) or "").strip()
        if raw:
            return raw
    return None


def session_key() -> str:
    """
    Key used to remember the agent id per terminal session.

    Each terminal tab gets its own identity. Non-interactive callers are
    keyed by their OS session, falling back to the parent pid where
    sessions are unavailable, so two detached agents never share an id.
    Two agents running inside one OS session must set AGENT_COORD_AGENT_ID.
    """
    try:
        if sys.stdin is not None and sys.stdin.isatty():
            tty = os.ttyname(sys.stdin.fileno())
            if tty:
                return f"tty:{tty}"
    except (OSError, ValueError, AttributeError):
        pass
    try:
        return f"sid:{os.getsid(0)}"
    except (OSError, AttributeError):
        return f"ppid:{os.getppid()}"


def generate_agent_id() -> str:
    host = socket.gethostname().split(".", 1)[0] or "host"
    return f"{host}-{int(time.time())}-{os.getpid()}"


def display_name(agent_id: str) -> str:
    return "-".join(agent_id.split("-")[0:2])


def _cached_id(root: Path, key: str) -> Optional[str]:
    obj = load_json_document(identities_path(root))
    by_key = obj.get("by_key")
    if not isinstance(by_key, dict):
        return None
    rec = by_key.get(key)
    if isinstance(rec, dict):
        name = str(rec.get("id") or "").strip()
        return name or None
    return None


def _store_id(root: Path, key: str, agent_id: str) -> str:
    """Persist `agent_id` for `key` unless another invocation got there first."""
    now = now_iso_utc()
    chosen: Dict[str, str] = {}

    def _update(cur: Dict[str, Any]) -> Dict[str, Any]:
        cur.setdefault("schema_version", 1)
        cur.setdefault("kind", "agent_identities")
        by_key = cur.get("by_key")
        if not isinstance(by_key, dict):
            by_key = {}
        existing = by_key.get(key)
        if isinstance(existing, dict) and str(existing.get("id") or "").strip():
            chosen["id"] = str(existing["id"]).strip()
            return cur
        by_key[key] = {"id": agent_id, "set_at": now}
        cur["by_key"] = by_key
        cur["updated_at"] = now
        chosen["id"] = agent_id
        return cur

    locked_update_json(identities_path(root), _update)
    return chosen["id"]


def resolve_agent_id(root: Path, explicit: Optional[str] = None) -> str:
    """
    Agent id for this session: explicit > env > cached > generated (then cached).
    """
    if explicit and explicit.strip():
        return explicit.strip()
    env_id = _env_agent_id()
    if env_id:
        return env_id

    key = session_key()
    try:
        cached = _cached_id(root, key)
    except CoordinationError as e:
        logger.warning("identity cache unreadable, generating a fresh id: %s", e)
        cached = None
    if cached:
        return cached

    fresh = generate_agent_id()
    try:
        return _store_id(root, key, fresh)
    except CoordinationError as e:
        # Still usable for this call; ownership checks across calls need the cache.
        logger.warning("failed to persist agent id %s: %s", fresh, e)
        return fresh
