"""
UserLockManager - per-(user, version) locks around the FSM commit step.

In-process locks are always taken; with a lock directory configured a
filesystem lock (fcntl) is held as well so that several worker processes
sweeping the same users serialise too.
"""

from __future__ import annotations

import hashlib
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

import fcntl


class _LockEntry:
    """In-process lock plus the number of threads holding or waiting on it."""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class UserLockManager:
    """Acquire per-user locks within and across processes."""

    def __init__(self, lock_dir: Optional[str] = None):
        lock_dir = lock_dir or os.getenv("LIFECYCLE_LOCK_DIR")
        self._lock_dir: Optional[Path] = None
        if lock_dir:
            self._lock_dir = Path(lock_dir).resolve()
            self._lock_dir.mkdir(parents=True, exist_ok=True)
        self._guard = threading.Lock()
        # Entries exist only while some thread holds or waits for the key
        self._locks: Dict[Tuple[str, str], _LockEntry] = {}

    @property
    def lock_dir(self) -> Optional[Path]:
        return self._lock_dir

    @contextmanager
    def _thread_lock(self, key: Tuple[str, str]) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _LockEntry()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[key]

    def _lock_path(self, user_id: str, version_id: str) -> Path:
        digest = hashlib.sha256(f"{version_id}:{user_id}".encode("utf-8")).hexdigest()
        return self._lock_dir / f"{digest}.lock"

    @contextmanager
    def lock(self, user_id: str, version_id: str = "") -> Iterator[None]:
        """Context manager holding the lock for one user in one version."""
        key = (str(user_id), str(version_id))
        with self._thread_lock(key):
            if self._lock_dir is None:
                yield
                return
            path = self._lock_path(*key)
            with open(path, "a", encoding="utf-8") as handle:
                fcntl.flock(handle, fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(handle, fcntl.LOCK_UN)
