"""
Resource-scoped mutual-exclusion token.

The token is an exclusive, non-blocking portalocker lock on a sidecar file.
Taking it either succeeds or fails in one OS call, and the kernel drops it
when the holder exits, so a killed holder never leaves the resource wedged.
The token only guards the short read/compare/write that decides a lease
outcome; it is never held across user work.

The sidecar file itself is left in place after release: unlinking a lock
file while another process waits on it would let two holders lock two
different inodes under the same name.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import portalocker

from agent_coord.errors import MutexTimeoutError

logger = logging.getLogger(__name__)

_FLAGS = portalocker.LockFlags.EXCLUSIVE | portalocker.LockFlags.NON_BLOCKING


@contextmanager
def mutex_token(
    token: Path,
    *,
    attempts: int = 50,
    backoff: float = 0.1,
) -> Iterator[Path]:
    """
    Hold `token` for the duration of the block.

    Raises MutexTimeoutError after `attempts` failed tries, sleeping
    `backoff` seconds between them.
    """
    token.parent.mkdir(parents=True, exist_ok=True)
    handle = token.open("a", encoding="utf-8")
    try:
        attempt = 0
        while True:
            attempt += 1
            try:
                portalocker.lock(handle, _FLAGS)
                break
            except portalocker.exceptions.LockException:
                if attempt >= attempts:
                    logger.debug("mutex busy after %d attempts: %s", attempt, token)
                    raise MutexTimeoutError(token, attempts)
                time.sleep(backoff)

        try:
            yield token
        finally:
            portalocker.unlock(handle)
    finally:
        handle.close()
