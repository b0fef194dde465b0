from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict

import portalocker

from agent_coord.errors import MutexTimeoutError, StoreCorruptedError
from agent_coord.paths import activity_log_path

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_iso_utc() -> str:
    return utc_now().isoformat()


def atomic_write_json(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.{os.getpid()}.tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
    tmp.replace(path)


def load_json_document(path: Path) -> Dict[str, Any]:
    """
    Read a whole JSON document.

    Missing file -> {} (nothing recorded yet).
    Unreadable / non-object content -> StoreCorruptedError, so a caller never
    acts on a half-decoded document.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as e:
        raise StoreCorruptedError(path, str(e)) from e
    if not raw.strip():
        return {}
    try:
        obj = json.loads(raw)
    except json.JSONDecodeError as e:
        raise StoreCorruptedError(path, f"invalid json: {e}") from e
    if not isinstance(obj, dict):
        raise StoreCorruptedError(path, "top-level value is not an object")
    return obj


def locked_update_json(
    path: Path,
    update_fn: Callable[[Dict[str, Any]], Dict[str, Any]],
    *,
    timeout: float = 5.0,
) -> Dict[str, Any]:
    """
    Locked read-modify-write of a whole document.

    All writers of `path` serialize on `<path>.lock`; readers never take it and
    see either the old or the new document thanks to the atomic replace.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    lock_path = path.with_name(path.name + ".lock")
    try:
        with portalocker.Lock(str(lock_path), mode="a", timeout=timeout, check_interval=0.05):
            cur = load_json_document(path)
            nxt = update_fn(cur)
            if not isinstance(nxt, dict):
                raise TypeError(f"update_fn must return a dict, got {type(nxt).__name__}")
            atomic_write_json(path, nxt)
            return nxt
    except portalocker.exceptions.LockException as e:
        attempts = max(1, int(timeout / 0.05))
        raise MutexTimeoutError(lock_path, attempts) from e


def append_activity(root: Path, *, actor: str, action: str, **fields: Any) -> None:
    payload: Dict[str, Any] = {
        "schema_version": SCHEMA_VERSION,
        "kind": "event",
        "created_at": now_iso_utc(),
        "actor": actor,
        "action": action,
    }
    payload.update(fields)
    path = activity_log_path(root)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(payload, ensure_ascii=False) + "\n")
    except OSError as e:
        # The activity log is informational; a full disk must not fail the operation.
        logger.debug("activity log append failed (%s): %s", path, e)
