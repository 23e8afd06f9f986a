"""
Copy-on-Write Watch Registry
============================

This module provides WatchRegistry, a keyed callback collection using
copy-on-write semantics.

Writers build a new dict and swap it in under a lock; readers take the current
dict without locking. A dispatch that iterates a snapshot therefore sees the
callbacks registered at the moment it started, even if watches are added or
removed while it runs.
"""

import threading
from types import MappingProxyType
from typing import Callable, Dict, Hashable, Mapping


class WatchRegistry:
    """
    Copy-on-Write mapping of watch key to callback.

    Keys are unique: adding a callback under an existing key replaces it.
    """

    __slots__ = ("_watches", "_lock")

    def __init__(self):
        self._watches: Dict[Hashable, Callable] = {}
        self._lock = threading.Lock()

    def add(self, key: Hashable, callback: Callable) -> None:
        """Upsert ``callback`` under ``key``."""
        if not callable(callback):
            raise TypeError(f"Watch {key!r} is not callable: {callback!r}")
        with self._lock:
            watches = dict(self._watches)
            watches[key] = callback
            self._watches = watches

    def remove(self, key: Hashable) -> None:
        """Remove the watch under ``key``; unknown keys are ignored."""
        with self._lock:
            if key not in self._watches:
                return
            watches = dict(self._watches)
            del watches[key]
            self._watches = watches

    def snapshot(self) -> Mapping[Hashable, Callable]:
        """Read-only view of the registered watches at this instant."""
        return MappingProxyType(self._watches)

    def __bool__(self) -> bool:
        return bool(self._watches)
