"""Advisory locks around migration, seed and rename batches.

Each key is an (operation, table) pair. Within one process a per-key
threading.Lock serializes callers; when a lock directory is configured a
filelock.FileLock on `<lock_dir>/<operation>.<table>.lock` also excludes
other processes sharing the same database file.
"""

import threading
import time
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Generator, Iterable

import structlog
from filelock import FileLock, Timeout

from schema_admin import metrics
from schema_admin.errors import Busy

logger = structlog.get_logger()


def lock_key(operation: str, table: str) -> str:
    """Generate unique key for an (operation, table) pair."""
    return f"{operation}:{table}"


class AdvisoryLockManager:
    """
    Named mutexes with bounded wait.

    Usage:
        with lock_manager.acquire("rename", ["old_widgets", "old_orders"]):
            # exclusive access to both tables for renames
            pass
    """

    def __init__(self, lock_dir: Path | None = None, timeout: float = 30.0):
        self._lock_dir = Path(lock_dir) if lock_dir else None
        self._timeout = timeout
        self._locks: dict[str, threading.Lock] = {}
        self._manager_lock = threading.Lock()  # Protects _locks dict

    @property
    def timeout(self) -> float:
        return self._timeout

    def get_lock(self, key: str) -> threading.Lock:
        """Get or create the in-process lock for a key."""
        with self._manager_lock:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
                logger.debug("advisory_lock_created", lock_key=key)
            return self._locks[key]

    def _file_lock(self, key: str) -> FileLock | None:
        if self._lock_dir is None:
            return None
        self._lock_dir.mkdir(parents=True, exist_ok=True)
        filename = key.replace(":", ".").replace("/", "_") + ".lock"
        return FileLock(str(self._lock_dir / filename), thread_local=False)

    @contextmanager
    def _acquire_one(
        self, operation: str, key: str, deadline: float, wait: float
    ) -> Generator[None, None, None]:
        lock = self.get_lock(key)
        remaining = max(deadline - time.monotonic(), 0.0)
        if not lock.acquire(timeout=remaining):
            metrics.LOCK_TIMEOUTS.labels(operation=operation).inc()
            logger.warning("advisory_lock_timeout", lock_key=key, timeout=wait)
            raise Busy(key, wait)

        try:
            file_lock = self._file_lock(key)
            if file_lock is not None:
                try:
                    file_lock.acquire(timeout=max(deadline - time.monotonic(), 0.0))
                except Timeout as e:
                    metrics.LOCK_TIMEOUTS.labels(operation=operation).inc()
                    logger.warning(
                        "advisory_lock_timeout",
                        lock_key=key,
                        lock_file=file_lock.lock_file,
                        timeout=wait,
                    )
                    raise Busy(key, wait) from e
            try:
                metrics.LOCKS_ACTIVE.inc()
                yield
            finally:
                metrics.LOCKS_ACTIVE.dec()
                if file_lock is not None:
                    file_lock.release()
        finally:
            lock.release()
            logger.debug("advisory_lock_released", lock_key=key)

    @contextmanager
    def acquire(
        self, operation: str, tables: Iterable[str], timeout: float | None = None
    ) -> Generator[list[str], None, None]:
        """
        Hold every (operation, table) lock for the duration of the block.

        Keys are acquired in sorted order so two batches over overlapping
        tables cannot deadlock. Raises Busy when any key is not available
        within the timeout; locks already taken are released first.
        """
        keys = sorted({lock_key(operation, table) for table in tables})
        wait = self._timeout if timeout is None else timeout
        deadline = time.monotonic() + wait

        logger.debug("advisory_lock_acquiring", operation=operation, lock_keys=keys)
        wait_start = time.perf_counter()

        with ExitStack() as stack:
            for key in keys:
                stack.enter_context(self._acquire_one(operation, key, deadline, wait))

            wait_duration = time.perf_counter() - wait_start
            metrics.LOCK_WAIT_TIME.observe(wait_duration)
            metrics.LOCK_ACQUISITIONS.labels(operation=operation).inc()
            logger.debug(
                "advisory_lock_acquired",
                operation=operation,
                lock_keys=keys,
                wait_ms=wait_duration * 1000,
            )
            yield keys

    def is_locked(self, operation: str, table: str) -> bool:
        """Check whether a key is currently held in this process."""
        key = lock_key(operation, table)
        with self._manager_lock:
            lock = self._locks.get(key)
        return lock is not None and lock.locked()
