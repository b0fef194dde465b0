#!/usr/bin/env python3
"""
Command surface for agent coordination.

  agent-lock  {check,acquire,release,status,cleanup}        resource leases
  agent-coord {register,update,heartbeat,deregister,status,cleanup,check-conflicts,json}
  agent-watch {watch,stop,status}                           single watch leader

`python -m agent_coord <lock|coord|watch> ...` is equivalent.

stdout carries one machine-parseable token (FREE, LOCKED, ACQUIRED, ERROR, ...)
followed by a human phrase. Exit codes: 0 ok; 1 locked / conflict / denied /
contention; 2 usage or config error; 3 shared state unreadable.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from agent_coord.config import CoordSettings, load_settings
from agent_coord.errors import ConfigError, LeaderActiveError, MutexTimeoutError, StoreCorruptedError
from agent_coord.events import InboxEventSource, OutboxResponder
from agent_coord.identity import display_name, resolve_agent_id
from agent_coord.lock_manager import LockManager
from agent_coord.paths import inbox_dir, outbox_dir
from agent_coord.registry import DEFAULT_TASK, CoordinationRegistry, parse_resources
from agent_coord.results import LeaseState, Outcome, StopStatus
from agent_coord.watch import WatchSupervisor, start_background, stop_watcher, watch_status

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_BLOCKED = 1
EXIT_USAGE = 2
EXIT_STORE = 3


def _settings(args: argparse.Namespace) -> CoordSettings:
    cached = getattr(args, "_settings", None)
    if cached is None:
        cached = load_settings()
        args._settings = cached
    return cached


def _root(args: argparse.Namespace) -> Path:
    if getattr(args, "state_dir", None):
        return Path(args.state_dir).expanduser().resolve()
    return _settings(args).state_root()


def _agent_id(args: argparse.Namespace) -> str:
    return resolve_agent_id(_root(args), getattr(args, "agent_id", None))


def _since(dt: Optional[datetime]) -> str:
    return dt.isoformat(timespec="seconds") if dt else "-"


def _exit_for(outcome: Outcome) -> int:
    return EXIT_OK if outcome is Outcome.OK else EXIT_BLOCKED


# ---------------------------------------------------------------------------
# agent-lock
# ---------------------------------------------------------------------------


def _lock_manager(args: argparse.Namespace) -> LockManager:
    return LockManager(_root(args), _agent_id(args), settings=_settings(args))


def cmd_lock_check(args: argparse.Namespace) -> int:
    res = _lock_manager(args).check(args.resource)
    print(res.status_line())
    return EXIT_BLOCKED if res.state is LeaseState.LOCKED else EXIT_OK


def cmd_lock_acquire(args: argparse.Namespace) -> int:
    res = _lock_manager(args).acquire(args.resource, args.purpose)
    print(res.message if res.ok else f"ERROR: {res.message}")
    return _exit_for(res.outcome)


def cmd_lock_release(args: argparse.Namespace) -> int:
    res = _lock_manager(args).release(args.resource)
    print(res.message if res.ok else f"ERROR: {res.message}")
    return _exit_for(res.outcome)


def cmd_lock_status(args: argparse.Namespace) -> int:
    views = _lock_manager(args).status()
    if args.json:
        out = [
            {
                "status": v.state,
                "resource": v.resource,
                "owner": v.owner,
                "purpose": v.purpose,
                "acquired_at": v.acquired_at.isoformat(),
                "age_sec": int(v.age_seconds),
            }
            for v in views
        ]
        print(json.dumps(out, ensure_ascii=False, indent=2))
        return EXIT_OK

    print("=== Active Agent Locks ===")
    if not views:
        print("No active locks")
        return EXIT_OK
    for v in views:
        print(f"[{v.state.upper()}] {v.resource}")
        print(f"         Agent: {v.owner}")
        print(f"         Task: {v.purpose}")
        print(f"         Since: {_since(v.acquired_at)}")
        print("")
    return EXIT_OK


def cmd_lock_cleanup(args: argparse.Namespace) -> int:
    removed = _lock_manager(args).cleanup()
    print(f"CLEANED {removed} stale lock(s)")
    return EXIT_OK


# ---------------------------------------------------------------------------
# agent-coord
# ---------------------------------------------------------------------------


def _registry(args: argparse.Namespace) -> CoordinationRegistry:
    return CoordinationRegistry(_root(args), settings=_settings(args))


def cmd_coord_register(args: argparse.Namespace) -> int:
    res = _registry(args).register(_agent_id(args), args.task or DEFAULT_TASK, parse_resources(args.resources))
    if not res.ok:
        print(f"ERROR: {res.message}")
        return _exit_for(res.outcome)
    print(res.message)
    print(f"Task: {res.record.task if res.record else args.task}")
    return EXIT_OK


def cmd_coord_update(args: argparse.Namespace) -> int:
    res = _registry(args).update(_agent_id(args), args.task, parse_resources(args.resources))
    print(res.message if res.ok else f"ERROR: {res.message}")
    return _exit_for(res.outcome)


def cmd_coord_heartbeat(args: argparse.Namespace) -> int:
    res = _registry(args).heartbeat(_agent_id(args))
    print(res.message if res.ok else f"ERROR: {res.message}")
    return _exit_for(res.outcome)


def cmd_coord_deregister(args: argparse.Namespace) -> int:
    res = _registry(args).deregister(_agent_id(args))
    print(res.message if res.ok else f"ERROR: {res.message}")
    return _exit_for(res.outcome)


def cmd_coord_status(args: argparse.Namespace) -> int:
    agents = _registry(args).list_active()
    if args.json:
        print(json.dumps([a.model_dump(mode="json") for a in agents], ensure_ascii=False, indent=2))
        return EXIT_OK

    print("=== Active Agents ===")
    if not agents:
        print("No active agents")
        return EXIT_OK
    print("")
    for a in agents:
        resources = ", ".join(a.resources) if a.resources else "(none specified)"
        print(f"[{display_name(a.id)}]  {a.task}")
        print(f"         Files: {resources}")
        print(f"         Since: {_since(a.started_at)}")
        print("")
    print("-" * 37)
    print(f"Total: {len(agents)} active agent(s)")
    return EXIT_OK


def cmd_coord_cleanup(args: argparse.Namespace) -> int:
    removed = _registry(args).cleanup()
    print(f"Removed {removed} stale agent(s)")
    return EXIT_OK


def cmd_coord_check_conflicts(args: argparse.Namespace) -> int:
    resources = parse_resources(args.resources)
    if not resources:
        print('Usage: agent-coord check-conflicts "file1,file2"', file=sys.stderr)
        return EXIT_USAGE
    reports = _registry(args).check_conflicts(resources, agent_id=_agent_id(args))
    if not reports:
        print("No conflicts detected")
        return EXIT_OK
    print("POTENTIAL CONFLICTS:")
    for r in reports:
        print(f"  {display_name(r.agent_id)} is working on {r.resource} ({r.task})")
    return EXIT_BLOCKED


def cmd_coord_json(args: argparse.Namespace) -> int:
    print(json.dumps(_registry(args).snapshot(), ensure_ascii=False, indent=2))
    return EXIT_OK


# ---------------------------------------------------------------------------
# agent-watch
# ---------------------------------------------------------------------------


def cmd_watch_run(args: argparse.Namespace) -> int:
    root = _root(args)
    settings = _settings(args)
    if args.background:
        extra = ["--verbose"] if getattr(args, "verbose", False) else []
        pid = start_background(root, extra_args=extra)
        print(f"STARTED watch daemon (PID: {pid})")
        print("  Run 'agent-watch stop' to stop")
        return EXIT_OK

    supervisor = WatchSupervisor(
        root,
        source=InboxEventSource(inbox_dir(root)),
        responder=OutboxResponder(outbox_dir(root)),
        settings=settings,
    )
    print(f"WATCHING {inbox_dir(root)} every {settings.poll_interval_seconds:g}s (PID: {supervisor.pid})", flush=True)
    polls = supervisor.run(max_polls=args.max_polls)
    print(f"STOPPED after {polls} poll(s); released leader lock")
    return EXIT_OK


def cmd_watch_stop(args: argparse.Namespace) -> int:
    status, message = stop_watcher(_root(args), settings=_settings(args), force=args.force)
    if status is StopStatus.STOPPED:
        print(f"STOPPED {message}")
        return EXIT_OK
    if status is StopStatus.NOT_RUNNING:
        print(f"NOT_RUNNING {message}")
        return EXIT_OK
    print(f"ERROR: {message}")
    return EXIT_BLOCKED


def cmd_watch_status(args: argparse.Namespace) -> int:
    st = watch_status(_root(args))
    if args.json:
        print(json.dumps(st, ensure_ascii=False, indent=2))
        return EXIT_OK
    if st["running"]:
        print(f"RUNNING watch daemon (PID: {st['pid']})")
        age = st["last_checked_age_sec"]
        print(f"  Last checked: {st['last_checked_at'] or 'unknown'}" + (f" ({age}s ago)" if age is not None else ""))
        return EXIT_OK
    print("NOT_RUNNING watch daemon is not running")
    return EXIT_OK


# ---------------------------------------------------------------------------
# parser
# ---------------------------------------------------------------------------


def _common_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--state-dir", default=argparse.SUPPRESS, help="override shared state dir (default: env/config/workspaces/coordination)")
    common.add_argument("--agent-id", default=argparse.SUPPRESS, help="agent id (or set env AGENT_COORD_AGENT_ID)")
    common.add_argument("-v", "--verbose", action="store_true", default=argparse.SUPPRESS, help="debug logging on stderr")
    return common


def build_parser() -> argparse.ArgumentParser:
    common = _common_options()
    p = argparse.ArgumentParser(prog="agent_coord", description="Multi-agent coordination (locks / registry / watch leader)")
    groups = p.add_subparsers(dest="group", required=True)

    # Locks
    g = groups.add_parser("lock", parents=[common], help="resource leases")
    sub = g.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("check", parents=[common], help="exit 0 if free (or stale), 1 if locked")
    sp.add_argument("resource")
    sp.set_defaults(func=cmd_lock_check)

    sp = sub.add_parser("acquire", parents=[common], help="acquire a lease on a resource")
    sp.add_argument("resource")
    sp.add_argument("purpose", nargs="?", default="editing", help="what you are doing (default: editing)")
    sp.set_defaults(func=cmd_lock_acquire)

    sp = sub.add_parser("release", parents=[common], help="release your lease (or a stale one)")
    sp.add_argument("resource")
    sp.set_defaults(func=cmd_lock_release)

    sp = sub.add_parser("status", parents=[common], help="list leases (active and stale)")
    sp.add_argument("--json", action="store_true", help="emit JSON array")
    sp.set_defaults(func=cmd_lock_status)

    sp = sub.add_parser("cleanup", parents=[common], help="remove stale leases")
    sp.set_defaults(func=cmd_lock_cleanup)

    # Registry
    g = groups.add_parser("coord", parents=[common], help="agent registry + heartbeat")
    sub = g.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("register", parents=[common], help="register (or re-register) this agent")
    sp.add_argument("task", nargs="?", default=DEFAULT_TASK)
    sp.add_argument("resources", nargs="?", default="", help="comma-separated resources")
    sp.set_defaults(func=cmd_coord_register)

    sp = sub.add_parser("update", parents=[common], help="update task/resources and heartbeat")
    sp.add_argument("task")
    sp.add_argument("resources", nargs="?", default="", help="comma-separated resources")
    sp.set_defaults(func=cmd_coord_update)

    sp = sub.add_parser("heartbeat", parents=[common], help="refresh heartbeat")
    sp.set_defaults(func=cmd_coord_heartbeat)

    sp = sub.add_parser("deregister", parents=[common], help="remove this agent")
    sp.set_defaults(func=cmd_coord_deregister)

    sp = sub.add_parser("status", parents=[common], help="show active agents (evicts stale ones)")
    sp.add_argument("--json", action="store_true", help="emit JSON array")
    sp.set_defaults(func=cmd_coord_status)

    sp = sub.add_parser("cleanup", parents=[common], help="remove agents with expired heartbeats")
    sp.set_defaults(func=cmd_coord_cleanup)

    sp = sub.add_parser("check-conflicts", parents=[common], help="exit 1 if another agent declared these resources")
    sp.add_argument("resources", help="comma-separated resources")
    sp.set_defaults(func=cmd_coord_check_conflicts)

    sp = sub.add_parser("json", parents=[common], help="raw registry document")
    sp.set_defaults(func=cmd_coord_json)

    # Watch
    g = groups.add_parser("watch", parents=[common], help="single watch leader")
    sub = g.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("watch", parents=[common], help="run the watch loop (holds the leader lock)")
    sp.add_argument("--background", "-b", action="store_true", help="start detached and return")
    sp.add_argument("--max-polls", type=int, default=None, help=argparse.SUPPRESS)
    sp.set_defaults(func=cmd_watch_run)

    sp = sub.add_parser("stop", parents=[common], help="stop the running watcher")
    sp.add_argument("--force", action="store_true", help="SIGKILL")
    sp.set_defaults(func=cmd_watch_stop)

    sp = sub.add_parser("status", parents=[common], help="watcher PID and last-checked time")
    sp.add_argument("--json", action="store_true", help="emit JSON")
    sp.set_defaults(func=cmd_watch_status)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if getattr(args, "verbose", False) else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        return int(args.func(args))
    except ConfigError as e:
        print(f"ERROR: {e}")
        return EXIT_USAGE
    except StoreCorruptedError as e:
        print(f"ERROR: shared state unavailable: {e}")
        return EXIT_STORE
    except MutexTimeoutError as e:
        print(f"ERROR: {e}")
        return EXIT_BLOCKED
    except LeaderActiveError as e:
        if e.pid:
            print(f"ERROR: Another watch daemon is already running (PID: {e.pid})")
            print(f"  Run 'agent-watch stop' first, or kill PID {e.pid}")
        else:
            print(f"ERROR: {e}")
        return EXIT_BLOCKED


def lock_main() -> int:
    return main(["lock", *sys.argv[1:]])


def coord_main() -> int:
    return main(["coord", *sys.argv[1:]])


def watch_main() -> int:
    return main(["watch", *sys.argv[1:]])


if __name__ == "__main__":
    raise SystemExit(main())
