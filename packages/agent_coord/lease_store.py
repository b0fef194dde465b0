from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import ValidationError

from agent_coord.errors import StoreCorruptedError
from agent_coord.jsonio import atomic_write_json, load_json_document
from agent_coord.models import Lease
from agent_coord.paths import resource_stem

logger = logging.getLogger(__name__)

LEASE_SUFFIX = ".lock"
MUTEX_SUFFIX = ".mutex"


class LeaseStore:
    """
    Durable map of resource name -> Lease, one JSON file per resource.

    No locking happens here: callers that mutate go through the resource's
    mutex token (see LockManager).
    """

    def __init__(self, directory: Path):
        self.directory = directory

    def path_for(self, resource: str) -> Path:
        return self.directory / f"{resource_stem(resource)}{LEASE_SUFFIX}"

    def mutex_path_for(self, resource: str) -> Path:
        p = self.path_for(resource)
        return p.with_name(p.name + MUTEX_SUFFIX)

    def _decode(self, path: Path) -> Optional[Lease]:
        data = load_json_document(path)
        if not data:
            return None
        try:
            return Lease.model_validate(data)
        except ValidationError as e:
            raise StoreCorruptedError(path, f"invalid lease record: {e.error_count()} error(s)") from e

    def read(self, resource: str) -> Optional[Lease]:
        path = self.path_for(resource)
        lease = self._decode(path)
        if lease is not None and lease.resource != resource:
            raise StoreCorruptedError(path, f"lease file records resource {lease.resource!r}")
        return lease

    def write(self, lease: Lease) -> Path:
        path = self.path_for(lease.resource)
        atomic_write_json(path, lease.model_dump(mode="json"))
        return path

    def delete(self, resource: str) -> bool:
        path = self.path_for(resource)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def scan(self) -> Tuple[List[Lease], List[Path]]:
        """Return (readable leases, unreadable lease files)."""
        leases: List[Lease] = []
        unreadable: List[Path] = []
        if not self.directory.exists():
            return leases, unreadable
        for fp in sorted(self.directory.glob(f"*{LEASE_SUFFIX}")):
            if not fp.is_file():
                continue
            try:
                lease = self._decode(fp)
            except StoreCorruptedError as e:
                logger.warning("skipping unreadable lease file: %s", e)
                unreadable.append(fp)
                continue
            if lease is not None:
                leases.append(lease)
        leases.sort(key=lambda lz: lz.resource)
        return leases, unreadable
