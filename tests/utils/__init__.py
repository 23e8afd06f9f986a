"""
Test utilities for drcfg.

Shared helpers for waiting on asynchronous updates and an in-memory
ZooKeeper to run references against.
"""

import ast
import threading
import time
from typing import Any, Callable, List

from .fake_zookeeper import FakeZooKeeper


def eventually(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` seconds pass."""
    deadline = time.monotonic() + timeout
    while True:
        if predicate():
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(interval)


class Recorder:
    """Watch callback that records its calls and lets tests wait for them."""

    def __init__(self):
        self.calls: List[tuple] = []
        self._event = threading.Event()
        self._lock = threading.Lock()

    def __call__(self, *args: Any) -> None:
        with self._lock:
            self.calls.append(args)
        self._event.set()

    def wait(self, timeout: float = 2.0) -> bool:
        return self._event.wait(timeout)

    def wait_for(self, count: int, timeout: float = 2.0) -> bool:
        return eventually(lambda: len(self.calls) >= count, timeout)


class ReprCodec:
    """Python literal codec, for exercising codec pluggability."""

    def serialize(self, value):
        return repr(value).encode("utf-8")

    def deserialize(self, data):
        return ast.literal_eval(data.decode("utf-8"))


__all__ = [
    "FakeZooKeeper",
    "Recorder",
    "ReprCodec",
    "eventually",
]
