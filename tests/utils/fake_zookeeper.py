"""
In-memory stand-in for a ZooKeeper ensemble and the KazooClient talking to it.

Implements the parts of the KazooClient API references and sessions use, with
kazoo's own exceptions, ZnodeStat and WatchedEvent types. Data watches are
one-shot and stored in a set per path, like kazoo's. By default watches are
delivered synchronously on the thread that made the change; with
``threaded_watches=True`` they go through a single worker thread, which is how
kazoo's threading handler delivers them.
"""

import threading
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

from kazoo.exceptions import (
    BadVersionError,
    NoNodeError,
    NodeExistsError,
    NotEmptyError,
)
from kazoo.protocol.states import (
    EventType,
    KazooState,
    KeeperState,
    WatchedEvent,
    ZnodeStat,
)


@dataclass
class _Node:
    data: bytes
    czxid: int
    mzxid: int
    ctime: int
    mtime: int
    version: int = 0

    def stat(self, num_children: int) -> ZnodeStat:
        return ZnodeStat(
            czxid=self.czxid,
            mzxid=self.mzxid,
            ctime=self.ctime,
            mtime=self.mtime,
            version=self.version,
            cversion=0,
            aversion=0,
            ephemeralOwner=0,
            dataLength=len(self.data),
            numChildren=num_children,
            pzxid=self.czxid,
        )


class SyncHandler:
    """Runs spawned work immediately on the calling thread."""

    def spawn(self, fn, *args, **kwargs):
        fn(*args, **kwargs)


class FakeZooKeeper:
    """A single-process ZooKeeper with a KazooClient-shaped API."""

    def __init__(self, threaded_watches: bool = False):
        self._nodes: Dict[str, _Node] = {"/": _Node(b"", 0, 0, 0, 0)}
        self._watches: Dict[str, Set[Callable]] = defaultdict(set)
        self._lock = threading.RLock()
        self._zxid = 0
        self._listeners: List[Callable] = []
        self._executor = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="fake-zk-event")
            if threaded_watches
            else None
        )
        self.handler = SyncHandler()
        self.connected = True
        self.started = False
        self.calls: List[Tuple[str, str]] = []
        self.set_failures: List[Exception] = []

    # ------------------------------------------------------------------
    # Helpers

    def _next_zxid(self) -> int:
        self._zxid += 1
        return self._zxid

    def _children(self, path: str) -> List[str]:
        prefix = path.rstrip("/") + "/"
        return [
            p for p in self._nodes if p != path and p.startswith(prefix) and "/" not in p[len(prefix):]
        ]

    def _stat(self, path: str) -> ZnodeStat:
        return self._nodes[path].stat(len(self._children(path)))

    def _fire(self, path: str, event_type: str) -> None:
        with self._lock:
            watches = self._watches.pop(path, set())
        event = WatchedEvent(event_type, KeeperState.CONNECTED, path)
        for watch in watches:
            if self._executor is not None:
                self._executor.submit(watch, event)
            else:
                watch(event)

    def watch_count(self, path: str) -> int:
        with self._lock:
            return len(self._watches.get(path, ()))

    def fail_next_sets(self, *errors: Exception) -> None:
        """Make the next ``set`` calls raise ``errors`` in order."""
        self.set_failures.extend(errors)

    def drain(self, timeout: float = 5.0) -> None:
        """Wait until every watch queued so far has been delivered."""
        if self._executor is not None:
            self._executor.submit(lambda: None).result(timeout)

    # ------------------------------------------------------------------
    # KazooClient API

    def exists(self, path: str, watch: Optional[Callable] = None) -> Optional[ZnodeStat]:
        self.calls.append(("exists", path))
        with self._lock:
            if path not in self._nodes:
                return None
            return self._stat(path)

    def create(self, path: str, value: bytes = b"", makepath: bool = False, **kwargs) -> str:
        self.calls.append(("create", path))
        with self._lock:
            if path in self._nodes:
                raise NodeExistsError()
            parent = path.rsplit("/", 1)[0] or "/"
            if parent not in self._nodes:
                if not makepath:
                    raise NoNodeError()
                self.ensure_path(parent)
            zxid = self._next_zxid()
            now = int(time.time() * 1000)
            self._nodes[path] = _Node(bytes(value), zxid, zxid, now, now)
        return path

    def ensure_path(self, path: str) -> bool:
        with self._lock:
            current = ""
            for part in [p for p in path.split("/") if p]:
                current = f"{current}/{part}"
                if current not in self._nodes:
                    zxid = self._next_zxid()
                    now = int(time.time() * 1000)
                    self._nodes[current] = _Node(b"", zxid, zxid, now, now)
        return True

    def get(self, path: str, watch: Optional[Callable] = None) -> Tuple[bytes, ZnodeStat]:
        self.calls.append(("get", path))
        with self._lock:
            if path not in self._nodes:
                raise NoNodeError()
            if watch is not None:
                self._watches[path].add(watch)
            return self._nodes[path].data, self._stat(path)

    def set(self, path: str, value: bytes, version: int = -1) -> ZnodeStat:
        self.calls.append(("set", path))
        with self._lock:
            if self.set_failures:
                raise self.set_failures.pop(0)
            node = self._nodes.get(path)
            if node is None:
                raise NoNodeError()
            if version != -1 and version != node.version:
                raise BadVersionError()
            node.data = bytes(value)
            node.version += 1
            node.mzxid = self._next_zxid()
            node.mtime = int(time.time() * 1000)
            stat = self._stat(path)
        self._fire(path, EventType.CHANGED)
        return stat

    def delete(self, path: str, version: int = -1, recursive: bool = False) -> bool:
        self.calls.append(("delete", path))
        with self._lock:
            node = self._nodes.get(path)
            if node is None:
                raise NoNodeError()
            if version != -1 and version != node.version:
                raise BadVersionError()
            children = self._children(path)
            if children and not recursive:
                raise NotEmptyError()
            doomed = [p for p in self._nodes if p == path or p.startswith(path.rstrip("/") + "/")]
            for p in doomed:
                del self._nodes[p]
        for p in doomed:
            self._fire(p, EventType.DELETED)
        return True

    def add_listener(self, listener: Callable) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def change_state(self, state: str) -> None:
        """Simulate a connection state change and notify listeners."""
        self.connected = state == KazooState.CONNECTED
        for listener in list(self._listeners):
            listener(state)

    def start(self, timeout: float = 15.0) -> None:
        self.started = True
        self.change_state(KazooState.CONNECTED)

    def stop(self) -> None:
        self.started = False
        self.change_state(KazooState.LOST)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Test conveniences

    def remote_calls(self, path: str) -> List[str]:
        return [op for op, p in self.calls if p == path]
