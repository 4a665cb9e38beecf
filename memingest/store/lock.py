"""
Memingest Store Lock
--------------------
Cross-process advisory file locking via portalocker.
Serialises retry passes so no pending entry is claimed twice.
"""

import logging
import contextlib
from pathlib import Path

import portalocker

from memingest.core.errors import RetryPassInProgressError

logger = logging.getLogger("Memingest.StoreLock")

LOCK_FILE_NAME = ".memingest.lock"


class StoreLock:
    """Exclusive, non-blocking lock on a file in the data directory."""

    def __init__(self, lock_file_path: Path, timeout: float = 0.0):
        self.lock_file_path = Path(lock_file_path)
        self.timeout = timeout

    @contextlib.contextmanager
    def acquire(self):
        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        flags = portalocker.LOCK_EX | portalocker.LOCK_NB
        try:
            lock = portalocker.Lock(
                str(self.lock_file_path),
                mode="a",
                timeout=self.timeout,
                flags=flags,
                fail_when_locked=True,
            )
            handle = lock.acquire()
        except portalocker.exceptions.LockException as e:
            logger.error("Lock %s is held by another process: %s", self.lock_file_path, e)
            raise RetryPassInProgressError(
                f"Another retry pass holds {self.lock_file_path}"
            ) from e
        try:
            yield handle
        finally:
            lock.release()


def get_store_lock(data_path: Path, timeout: float = 0.0) -> StoreLock:
    """Standard lock for a given data directory."""
    return StoreLock(Path(data_path) / LOCK_FILE_NAME, timeout=timeout)
