"""
Coordination registry: who is active, on what, touching which resources.

Advisory only. It gives agents visibility before they reach for the
LockManager; it never blocks anything itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError

from agent_coord.config import CoordSettings
from agent_coord.errors import MutexTimeoutError, NotRegisteredError, StoreCorruptedError
from agent_coord.jsonio import SCHEMA_VERSION, append_activity, load_json_document, locked_update_json, utc_now
from agent_coord.models import AgentRecord
from agent_coord.paths import registry_path
from agent_coord.results import Outcome

logger = logging.getLogger(__name__)

DEFAULT_TASK = "Working on async project"


@dataclass(frozen=True)
class RegistryResult:
    outcome: Outcome
    agent_id: str
    record: Optional[AgentRecord] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK


@dataclass(frozen=True)
class ConflictReport:
    resource: str
    agent_id: str
    task: str
    declared: str


def parse_resources(raw: Optional[str | Iterable[str]]) -> List[str]:
    """Accept "a.py, b.py" or an iterable; blanks are dropped."""
    if raw is None:
        return []
    items = raw.split(",") if isinstance(raw, str) else list(raw)
    out: List[str] = []
    for item in items:
        s = str(item).strip()
        if s and s not in out:
            out.append(s)
    return out


def _resource_matches(candidate: str, declared: str) -> bool:
    return candidate == declared or candidate in declared


class CoordinationRegistry:
    def __init__(
        self,
        root: Path,
        *,
        settings: Optional[CoordSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.root = root
        self.settings = settings or CoordSettings()
        self.clock = clock
        self.path = registry_path(root)

    @property
    def ttl_seconds(self) -> float:
        return self.settings.heartbeat_ttl_seconds

    # -- document helpers -------------------------------------------------

    def _decode_agents(self, doc: Dict[str, Any]) -> List[AgentRecord]:
        raw = doc.get("agents", [])
        if not isinstance(raw, list):
            raise StoreCorruptedError(self.path, "`agents` is not a list")
        try:
            return [AgentRecord.model_validate(item) for item in raw]
        except ValidationError as e:
            raise StoreCorruptedError(self.path, f"invalid agent record: {e.error_count()} error(s)") from e

    @staticmethod
    def _encode(agents: List[AgentRecord]) -> Dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "kind": "agent_registry",
            "agents": [a.model_dump(mode="json") for a in agents],
        }

    def _mutate(self, fn: Callable[[List[AgentRecord]], List[AgentRecord]]) -> List[AgentRecord]:
        result: Dict[str, List[AgentRecord]] = {}

        def _update(cur: Dict[str, Any]) -> Dict[str, Any]:
            agents = fn(self._decode_agents(cur))
            result["agents"] = agents
            return self._encode(agents)

        locked_update_json(self.path, _update, timeout=self.settings.document_lock_timeout_seconds)
        return result["agents"]

    def _read_agents(self) -> List[AgentRecord]:
        return self._decode_agents(load_json_document(self.path))

    # -- operations -------------------------------------------------------

    def register(self, agent_id: str, task: str = DEFAULT_TASK, resources: Optional[Iterable[str]] = None) -> RegistryResult:
        now = self.clock()
        record = AgentRecord(
            id=agent_id,
            task=task or DEFAULT_TASK,
            resources=parse_resources(resources),
            started_at=now,
            heartbeat_at=now,
        )
        try:
            self._mutate(lambda agents: [a for a in agents if a.id != agent_id] + [record])
        except MutexTimeoutError as e:
            return RegistryResult(outcome=Outcome.MUTEX_TIMEOUT, agent_id=agent_id, message=str(e))
        append_activity(self.root, actor=agent_id, action="agent_registered", task=record.task, resources=record.resources)
        return RegistryResult(outcome=Outcome.OK, agent_id=agent_id, record=record, message=f"REGISTERED: {agent_id}")

    def _touch(
        self,
        agent_id: str,
        *,
        task: Optional[str] = None,
        resources: Optional[Iterable[str]] = None,
    ) -> RegistryResult:
        found: Dict[str, AgentRecord] = {}

        def _apply(agents: List[AgentRecord]) -> List[AgentRecord]:
            now = self.clock()
            out: List[AgentRecord] = []
            for a in agents:
                if a.id == agent_id:
                    changes: Dict[str, Any] = {"heartbeat_at": max(now, a.heartbeat_at)}
                    if task is not None:
                        changes["task"] = task
                    if resources is not None:
                        changes["resources"] = parse_resources(resources)
                    a = a.model_copy(update=changes)
                    found["record"] = a
                out.append(a)
            return out

        try:
            self._mutate(_apply)
        except MutexTimeoutError as e:
            return RegistryResult(outcome=Outcome.MUTEX_TIMEOUT, agent_id=agent_id, message=str(e))
        record = found.get("record")
        if record is None:
            return RegistryResult(
                outcome=Outcome.NOT_REGISTERED,
                agent_id=agent_id,
                message=f"agent {agent_id} is not registered (run `register` first)",
            )
        return RegistryResult(outcome=Outcome.OK, agent_id=agent_id, record=record)

    def update(self, agent_id: str, task: str, resources: Optional[Iterable[str]] = None) -> RegistryResult:
        res = self._touch(agent_id, task=task, resources=resources if resources is not None else [])
        if res.ok:
            append_activity(self.root, actor=agent_id, action="agent_updated", task=task)
            return RegistryResult(outcome=Outcome.OK, agent_id=agent_id, record=res.record, message=f"UPDATED: {task}")
        return res

    def heartbeat(self, agent_id: str) -> RegistryResult:
        res = self._touch(agent_id)
        if res.ok and res.record is not None:
            return RegistryResult(
                outcome=Outcome.OK,
                agent_id=agent_id,
                record=res.record,
                message=f"HEARTBEAT: {res.record.heartbeat_at.isoformat()}",
            )
        return res

    def deregister(self, agent_id: str) -> RegistryResult:
        try:
            self._mutate(lambda agents: [a for a in agents if a.id != agent_id])
        except MutexTimeoutError as e:
            return RegistryResult(outcome=Outcome.MUTEX_TIMEOUT, agent_id=agent_id, message=str(e))
        append_activity(self.root, actor=agent_id, action="agent_deregistered")
        return RegistryResult(outcome=Outcome.OK, agent_id=agent_id, message=f"DEREGISTERED: {agent_id}")

    def _evict_stale(self) -> tuple[List[AgentRecord], int]:
        counts = {"removed": 0}

        def _apply(agents: List[AgentRecord]) -> List[AgentRecord]:
            now = self.clock()
            keep = [a for a in agents if not a.is_stale(now, self.ttl_seconds)]
            counts["removed"] = len(agents) - len(keep)
            return keep

        agents = self._mutate(_apply)
        return agents, counts["removed"]

    def list_active(self) -> List[AgentRecord]:
        """
        Evict agents whose heartbeat is older than the TTL, then list the rest.

        When the document is busy the eviction is skipped and stale records are
        filtered from the returned view only.
        """
        try:
            agents, removed = self._evict_stale()
        except MutexTimeoutError as e:
            logger.info("registry busy, listing without eviction: %s", e)
            now = self.clock()
            return [a for a in self._read_agents() if not a.is_stale(now, self.ttl_seconds)]
        if removed:
            logger.info("evicted %d stale agent(s)", removed)
        return agents

    def cleanup(self) -> int:
        _agents, removed = self._evict_stale()
        if removed:
            append_activity(self.root, actor="registry", action="agents_cleaned", removed=removed)
        return removed

    def check_conflicts(self, resources: Iterable[str], agent_id: Optional[str] = None) -> List[ConflictReport]:
        """Report other active agents whose declared resources cover a candidate."""
        candidates = parse_resources(resources)
        now = self.clock()
        reports: List[ConflictReport] = []
        # Readers never take the document lock; a slightly stale view is fine here.
        for agent in self._read_agents():
            if agent_id and agent.id == agent_id:
                continue
            if agent.is_stale(now, self.ttl_seconds):
                continue
            for candidate in candidates:
                for declared in agent.resources:
                    if _resource_matches(candidate, declared):
                        reports.append(ConflictReport(resource=candidate, agent_id=agent.id, task=agent.task, declared=declared))
                        break
        return reports

    def get(self, agent_id: str) -> AgentRecord:
        """Registered record for `agent_id`, stale or not; raises NotRegisteredError."""
        for agent in self._read_agents():
            if agent.id == agent_id:
                return agent
        raise NotRegisteredError(agent_id)

    def snapshot(self) -> Dict[str, Any]:
        doc = load_json_document(self.path)
        return doc or self._encode([])
