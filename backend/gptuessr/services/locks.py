"""Per-key mutual exclusion for lobby and game mutations.

Every mutating operation on a lobby holds ``lobby:<CODE>`` from its first read
until its commit; game mutations hold ``game:<id>``. Locks are re-entrant so an
operation may call another on the same key (leave -> close). When both are
needed the lobby key is always taken first.
"""
from contextlib import contextmanager
from threading import Lock, RLock
from typing import Dict, Iterator, Tuple


class KeyedLocks:
    def __init__(self):
        self._guard = Lock()
        # key -> (lock, number of threads holding or waiting)
        self._locks: Dict[str, Tuple[RLock, int]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = RLock()
            self._locks[key] = (lock, users + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                held, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (held, users - 1)

    def __len__(self):
        with self._guard:
            return len(self._locks)


_registry = KeyedLocks()


def lobby_lock(code: str):
    return _registry.hold(f"lobby:{code.upper()}")


def game_lock(game_id: int):
    return _registry.hold(f"game:{game_id}")


def registry() -> KeyedLocks:
    return _registry


def code_allocation_lock():
    return _registry.hold('lobby-codes')
