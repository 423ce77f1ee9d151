from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator


class KeyedLocks:
    """One reentrant lock per key, created on first use.

    The registry lock only guards lock creation; holding a key's lock never
    blocks other keys.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._locks: Dict[Hashable, threading.RLock] = {}
        self._guard = threading.Lock()

    def get(self, key: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    def discard(self, key: Hashable) -> None:
        """Forget a key whose lock will not be contended again.

        Threads already holding or waiting on the old lock keep it; later
        callers get a fresh one.
        """
        with self._guard:
            self._locks.pop(key, None)

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        lock = self.get(key)
        with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)
