from __future__ import annotations

import hashlib
import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Optional


# ---------------------------------------------------------------------------
# Repo / state roots
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def repo_root(start: Optional[Path] = None) -> Path:
    """
    Resolve repository root by searching for pyproject.toml.
    Env override:
      - AGENT_COORD_REPO_ROOT: absolute path to repo root
    """
    override = os.getenv("AGENT_COORD_REPO_ROOT")
    if override:
        return Path(override).expanduser().resolve()

    if start is None:
        start = Path(__file__).resolve()
    cur = start if start.is_dir() else start.parent

    for candidate in (cur, *cur.parents):
        if (candidate / "pyproject.toml").exists():
            return candidate.resolve()

    # Fallback: best-effort current directory
    return Path.cwd().resolve()


def state_root(configured: Optional[str] = None) -> Path:
    """
    Root directory for every shared coordination document.

    Priority:
      1) env AGENT_COORD_STATE_DIR
      2) `state_dir` from configs/agent_coord.yaml (passed in as `configured`)
      3) <repo_root>/workspaces/coordination
    """
    override = (os.getenv("AGENT_COORD_STATE_DIR") or "").strip()
    raw = override or (configured or "").strip()
    if raw:
        p = Path(raw).expanduser()
        return p if p.is_absolute() else (repo_root() / p)
    return repo_root() / "workspaces" / "coordination"


# ---------------------------------------------------------------------------
# Layout under the state root
# ---------------------------------------------------------------------------


def locks_dir(root: Path) -> Path:
    return root / "locks"


def registry_path(root: Path) -> Path:
    return root / "registry.json"


def identities_path(root: Path) -> Path:
    return root / "identities.json"


def activity_log_path(root: Path) -> Path:
    return root / "activity.jsonl"


def watch_dir(root: Path) -> Path:
    return root / "watch"


def leader_marker_dir(root: Path) -> Path:
    return watch_dir(root) / "leader.lock"


def watch_state_path(root: Path) -> Path:
    return watch_dir(root) / "state.json"


def responses_path(root: Path) -> Path:
    return watch_dir(root) / "responses.json"


def inbox_dir(root: Path) -> Path:
    return watch_dir(root) / "inbox"


def outbox_dir(root: Path) -> Path:
    return watch_dir(root) / "outbox"


def watch_log_path(root: Path) -> Path:
    return watch_dir(root) / "stdout.log"


_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def resource_stem(resource: str) -> str:
    """
    File-name stem for a resource name.

    The readable part is lossy ("a/b" and "a_b" both become "a_b"), so a short
    digest of the exact name is appended to keep distinct resources apart.
    """
    readable = _UNSAFE_CHARS.sub("_", resource.strip()).strip("._")[:80] or "resource"
    digest = hashlib.sha1(resource.encode("utf-8")).hexdigest()[:10]
    return f"{readable}__{digest}"
