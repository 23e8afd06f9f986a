"""
drcfg Cell - Atomically Replaced Snapshot
=========================================

The cache of a reference is a single ``Snapshot`` of the last committed
(value, stat) pair held in an ``AtomicCell``. Snapshots are never mutated;
every commit swaps in a new one, so a reader holding a snapshot always sees a
value together with the stat it was read with.
"""

import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Generic, Mapping, Optional, Tuple, TypeVar

T = TypeVar("T")

UNPERSISTED_VERSION = -1


def freeze_stat(stat: Any) -> Mapping[str, Any]:
    """Turn a kazoo ``ZnodeStat`` (or any mapping) into a read-only mapping."""
    if stat is None:
        return MappingProxyType({"version": UNPERSISTED_VERSION})
    if hasattr(stat, "_asdict"):
        stat = stat._asdict()
    return MappingProxyType(dict(stat))


@dataclass(frozen=True)
class Snapshot(Generic[T]):
    """Immutable (value, stat) pair."""

    value: T
    stat: Mapping[str, Any]

    @property
    def version(self) -> int:
        return self.stat.get("version", UNPERSISTED_VERSION)

    @property
    def versioned(self) -> Tuple[T, int]:
        return (self.value, self.version)

    @classmethod
    def unpersisted(cls, value: T) -> "Snapshot[T]":
        return cls(value, freeze_stat(None))


class AtomicCell(Generic[T]):
    """
    A reference cell with atomic reset and compare-and-set.

    compare_and_set compares by identity, so two snapshots that happen to be
    equal are still distinct generations.
    """

    __slots__ = ("_value", "_lock")

    def __init__(self, initial: Optional[T] = None):
        self._value = initial
        self._lock = threading.Lock()

    def get(self) -> T:
        return self._value

    def reset(self, new: T) -> T:
        with self._lock:
            self._value = new
        return new

    def compare_and_set(self, expected: T, new: T) -> bool:
        with self._lock:
            if self._value is not expected:
                return False
            self._value = new
            return True

    def __repr__(self):
        return f"AtomicCell({self._value!r})"
