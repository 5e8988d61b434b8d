import threading
from contextlib import contextmanager


class KeyedLocks:
    """
    Process-wide registry of mutexes keyed by string.

    Entries are created on first use and dropped once no thread holds or
    waits on them, so the registry stays bounded by the number of keys in
    flight.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}  # key -> [lock, users]

    @contextmanager
    def acquire(self, key: str):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1

        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self):
        with self._guard:
            return len(self._locks)


locks = KeyedLocks()
