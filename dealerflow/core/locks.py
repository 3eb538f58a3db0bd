"""
Keyed in-process mutexes.

Serialises mutations per workflow id (and creation per record + process pair)
without a global lock: different keys never contend. Entries are weakly held,
so a key's lock is discarded once no thread holds or waits on it.

Usage:
    locks = KeyedLocks()
    with locks.hold(workflow_id):
        ...
"""

import threading
import weakref
from contextlib import contextmanager
from typing import Hashable


class _KeyLock:
    __slots__ = ("lock", "__weakref__")

    def __init__(self):
        self.lock = threading.Lock()


class KeyedLocks:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[Hashable, _KeyLock]" = weakref.WeakValueDictionary()

    def _get(self, key: Hashable) -> _KeyLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _KeyLock()
                self._locks[key] = entry
            return entry

    @contextmanager
    def hold(self, key: Hashable):
        # The local reference keeps the entry alive while held or awaited
        entry = self._get(key)
        with entry.lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
