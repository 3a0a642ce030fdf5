"""Advisory locks serialising access to shared cache entries."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

try:
    import fcntl
except ImportError:  # pragma: no cover - windows
    fcntl = None

_LOCK_GUARD = threading.Lock()
_LOCAL_LOCKS: dict[str, threading.Lock] = {}


def _local_lock(lock_path: Path) -> threading.Lock:
    key = str(lock_path.resolve())
    with _LOCK_GUARD:
        lock = _LOCAL_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _LOCAL_LOCKS[key] = lock
        return lock


def _acquire_file_lock(handle) -> None:
    if fcntl is None:  # pragma: no cover - no-op on unsupported platforms
        return
    fcntl.flock(handle.fileno(), fcntl.LOCK_EX)


def _release_file_lock(handle) -> None:
    if fcntl is None:  # pragma: no cover - no-op on unsupported platforms
        return
    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@contextmanager
def advisory_lock(lock_path: Path) -> Iterator[None]:
    """Hold an exclusive lock on ``lock_path`` across threads and processes.

    Threads of this process queue on an in-memory lock keyed by the
    resolved path; other processes block on ``flock``.
    """

    lock_path = Path(lock_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    local_lock = _local_lock(lock_path)
    local_lock.acquire()
    handle = None
    try:
        handle = lock_path.open("a+", encoding="utf-8")
        _acquire_file_lock(handle)
        yield
    finally:
        if handle is not None:
            try:
                _release_file_lock(handle)
            except OSError:
                pass
            handle.close()
        local_lock.release()


__all__ = ["advisory_lock"]
