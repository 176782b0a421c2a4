from collections.abc import Hashable
from contextlib import contextmanager
from threading import Lock


class KeyedLocks:
    """Hands out one lock per key so unrelated keys never wait on each other.

    Entries are reference counted and dropped once no caller holds or waits
    on them.
    """

    def __init__(self) -> None:
        self._registry_lock = Lock()
        self._locks: dict[Hashable, list] = {}

    @contextmanager
    def hold(self, key: Hashable):
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = [Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1

        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._registry_lock:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)
