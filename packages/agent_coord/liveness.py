from __future__ import annotations

import os
from typing import Protocol


class ProcessLiveness(Protocol):
    def is_alive(self, handle: int) -> bool:
        """Return True while the process identified by `handle` exists."""


class OsProcessLiveness:
    """Signal-0 probe: delivers nothing, only checks the process table."""

    def is_alive(self, handle: int) -> bool:
        try:
            pid = int(handle)
        except (TypeError, ValueError):
            return False
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists, owned by another user.
            return True
        except OSError:
            return False
        return True
