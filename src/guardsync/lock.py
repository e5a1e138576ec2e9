"""Advisory pass lock so two invocations never interleave writes."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from filelock import FileLock, Timeout

from guardsync.errors import LockHeldError

logger = logging.getLogger(__name__)


@contextmanager
def pass_lock(path: str | Path, timeout: float = 0) -> Iterator[FileLock]:
    """Hold the lock file for the duration of a pass.

    Raises LockHeldError if another process has it and ``timeout`` expires
    (the default of 0 fails immediately).
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(path))
    try:
        lock.acquire(timeout=timeout)
    except Timeout as e:
        raise LockHeldError(f"Another guardsync pass holds {path}") from e
    logger.debug("Acquired pass lock %s", path)
    try:
        yield lock
    finally:
        lock.release()
        logger.debug("Released pass lock %s", path)
