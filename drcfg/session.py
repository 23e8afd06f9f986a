"""
drcfg Session - Client Lifecycle
================================

``Session`` owns a ``KazooClient``, republishes its connection state as a
small stream of lifecycle events and keeps a set of references connected
while the session is up:

- ``STARTED`` when ``start()`` is called
- ``CONNECTED`` whenever kazoo reports ``KazooState.CONNECTED``
- ``DISCONNECTED`` on ``SUSPENDED`` or ``LOST``

```python
with Session("zk1:2181,zk2:2181/config") as session:
    session.subscribe(lambda event: print("session", event.value))
    limits = session.register(ZRef("/service/limits", {"rps": 100}))
    ...
```

kazoo calls state listeners on its connection thread, which must not block.
Reconnecting references does network I/O, so it is handed to the client's
handler; subscribers are called inline and should return quickly.
"""

import logging
import threading
from enum import Enum
from typing import Callable, Dict, Optional

from kazoo.client import KazooClient
from kazoo.protocol.states import KazooState

from .protocols import ConnectionHandle
from .util import WatchRegistry
from .zref import ZRef

DEFAULT_TIMEOUT = 15.0


class SessionEvent(Enum):
    """Lifecycle events published by a Session."""

    STARTED = "started"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


def open_client(hosts: str, timeout: float = DEFAULT_TIMEOUT) -> KazooClient:
    """
    Create and start a client for ``hosts``, creating the chroot root if the
    connect string has one.
    """
    client = KazooClient(hosts=hosts, timeout=timeout)
    client.start(timeout=timeout)
    client.ensure_path("/")
    return client


class Session:
    """
    A ZooKeeper client plus the references it keeps connected.

    Args:
        hosts: connect string used to build a ``KazooClient`` when ``client``
            is not given.
        client: an existing (not yet started) client.
        timeout: connection timeout in seconds.
    """

    def __init__(
        self,
        hosts: Optional[str] = None,
        client: Optional[ConnectionHandle] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        if client is None:
            if hosts is None:
                raise ValueError("Session needs either hosts or client")
            client = KazooClient(hosts=hosts, timeout=timeout)
        self.client = client
        self.timeout = timeout
        self._refs: Dict[str, ZRef] = {}
        self._lock = threading.RLock()
        self._subscribers = WatchRegistry()
        self._connected = False
        client.add_listener(self._on_state_change)

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def refs(self) -> Dict[str, ZRef]:
        with self._lock:
            return dict(self._refs)

    # ------------------------------------------------------------------
    # Events

    def subscribe(self, fn: Callable[[SessionEvent], None]) -> Callable[[], None]:
        """Call ``fn(event)`` for every lifecycle event; returns an unsubscriber."""
        key = id(fn)
        self._subscribers.add(key, fn)
        return lambda: self._subscribers.remove(key)

    def _emit(self, event: SessionEvent) -> None:
        logging.info(f"Session {event.value}")
        for fn in self._subscribers.snapshot().values():
            try:
                fn(event)
            except Exception as e:
                logging.error(f"Error in session subscriber {fn!r}: {e}", exc_info=True)

    def _on_state_change(self, state: str) -> None:
        # Returning True would make kazoo drop this listener.
        if state == KazooState.CONNECTED:
            self._connected = True
            self._emit(SessionEvent.CONNECTED)
            self.client.handler.spawn(self._connect_all)
        else:
            was_connected, self._connected = self._connected, False
            self._disconnect_all()
            if was_connected:
                self._emit(SessionEvent.DISCONNECTED)

    # ------------------------------------------------------------------
    # References

    def register(self, ref: ZRef) -> ZRef:
        """
        Track ``ref``; it is connected now if the session is up and on every
        later reconnect.

        Raises:
            ValueError: another reference is registered at the same path.
            BootError: connecting ``ref`` right away failed.
        """
        with self._lock:
            existing = self._refs.get(ref.path)
            if existing is not None and existing is not ref:
                raise ValueError(f"A reference is already registered at {ref.path}")
            self._refs[ref.path] = ref
        if self._connected:
            ref.connect(self.client)
        return ref

    def unregister(self, ref: ZRef) -> ZRef:
        with self._lock:
            if self._refs.get(ref.path) is ref:
                del self._refs[ref.path]
        return ref.disconnect()

    def _connect_all(self) -> None:
        for ref in self.refs.values():
            if not self._connected:
                return
            try:
                ref.connect(self.client)
            except Exception as e:
                logging.error(f"Failed to connect {ref.path}: {e}", exc_info=True)

    def _disconnect_all(self) -> None:
        for ref in self.refs.values():
            ref.disconnect()

    # ------------------------------------------------------------------
    # Lifecycle

    def start(self) -> "Session":
        self._emit(SessionEvent.STARTED)
        self.client.start(timeout=self.timeout)
        self.client.ensure_path("/")
        return self

    def stop(self) -> None:
        self._disconnect_all()
        try:
            self.client.stop()
            self.client.close()
        finally:
            self.client.remove_listener(self._on_state_change)
            if self._connected:
                self._connected = False
                self._emit(SessionEvent.DISCONNECTED)

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
