"""Per-fingerprint mutual exclusion, within a process and across processes.

Two layers:
- ``KeyedLocks``: one asyncio.Lock per key, so concurrent tasks in this process
  queue up instead of racing.
- ``FileLock``: an advisory OS lock on ``<lock_dir>/<key>.lock`` so independent
  processes sharing a cache root cooperate.

The file lock is polled non-blocking, which keeps waiting tasks cancellable (a
timed-out waiter never ends up holding a lock nobody will release).
"""

import asyncio
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

try:  # pragma: no cover - platform specific availability
    import fcntl  # type: ignore
except ImportError:  # pragma: no cover - windows
    fcntl = None  # type: ignore[assignment]

try:  # pragma: no cover - platform specific availability
    import msvcrt  # type: ignore
except ImportError:  # pragma: no cover - non-windows
    msvcrt = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.05


class FileLock:
    """Advisory inter-process lock backed by a file.

    Example:
        >>> async with FileLock(cache_root / ".locks" / "serde-1.0.0.lock"):
        ...     ...  # exclusive across processes
    """

    def __init__(self, lock_path: Path, poll_interval: float = DEFAULT_POLL_INTERVAL):
        self.lock_path = lock_path
        self.poll_interval = poll_interval
        self._handle = None

    @property
    def locked(self) -> bool:
        return self._handle is not None

    async def acquire(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.lock_path, "a+b")
        try:
            handle.seek(0, os.SEEK_END)
            if handle.tell() == 0:
                # msvcrt locks byte ranges; make sure byte 0 exists
                handle.write(b"0")
                handle.flush()

            waited = False
            while not _try_lock(handle):
                if not waited:
                    logger.debug(f"Waiting for lock {self.lock_path}")
                    waited = True
                await asyncio.sleep(self.poll_interval)
        except BaseException:
            handle.close()
            raise

        self._handle = handle

    def release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            _unlock(handle)
        finally:
            handle.close()

    async def __aenter__(self) -> "FileLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


def _try_lock(handle) -> bool:
    if fcntl is not None:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        return True
    if msvcrt is not None:
        handle.seek(0)
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError:
            return False
        return True
    # No locking backend available: in-process locks still apply
    return True


def _unlock(handle) -> None:
    if fcntl is not None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    elif msvcrt is not None:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)


class KeyedLocks:
    """asyncio.Lock per key, dropped once nobody holds or waits for it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]
