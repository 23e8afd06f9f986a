"""
drcfg ZRef - Distributed Atomic Reference
=========================================

A reference whose state is persisted in a ZooKeeper node. The semantics are
similar to an in-memory atomic cell, with these differences:

- The read state (``value``) may lag successful writes. Writes never touch the
  local cache; the watch on the node delivers every committed change, and that
  is the only place the cache is updated.
- Read-only metadata mirrors the ZooKeeper ``ZnodeStat`` of the cached value.
- No writes are possible while disconnected.
- Compare-and-set insists on the current value AND the current version.
- ``swap()`` can fail if there is too much contention on the node.

Lifecycle
---------

```python
from kazoo.client import KazooClient
from drcfg import ZRef

limits = ZRef("/service/limits", {"rps": 100}, validator=lambda v: v["rps"] > 0)
limits.value                        # {"rps": 100}, version -1

client = KazooClient("zk1:2181/config")
client.start()
limits.connect(client)              # creates or adopts the node, arms the watch
limits.swap(lambda v: {**v, "rps": v["rps"] * 2})
limits.add_watch("log", lambda key, ref, old, new: print(old, "->", new))
limits.disconnect()                 # reads keep working, writes fail fast
```

ZooKeeper watches fire once. Every read performed by the update path passes a
fresh watch, so the node is watched again before the payload is even decoded.
See https://zookeeper.apache.org/doc/current/zookeeperProgrammers.html#ch_zkWatches
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Generic, Hashable, Mapping, Optional, Tuple, TypeVar

from kazoo.exceptions import BadVersionError, NodeExistsError
from kazoo.protocol.states import EventType, KeeperState, WatchedEvent

from .cell import UNPERSISTED_VERSION, AtomicCell, Snapshot, freeze_stat
from .codec import Codec, get_default_codec
from .exceptions import BootError, NotConnectedError, RetryExhaustedError, ValidationError
from .protocols import ConnectionHandle, Validator, WatchFunction
from .util import WatchRegistry

T = TypeVar("T")

BOOT = "BOOT"

DEFAULT_MAX_UPDATE_ATTEMPTS = 50
INITIAL_BACKOFF_MS = 1
MAX_BACKOFF_MS = 1000


def _validate(validator: Optional[Validator], value: Any) -> None:
    if validator is not None and not validator(value):
        raise ValidationError("Invalid reference state", value)


def _is_newer(new: Snapshot, old: Snapshot) -> bool:
    """Order snapshots by modification zxid, falling back to version."""
    new_zxid, old_zxid = new.stat.get("mzxid"), old.stat.get("mzxid")
    if new_zxid is not None and old_zxid is not None:
        return new_zxid >= old_zxid
    return new.version >= old.version


class ZRef(Generic[T]):
    """
    A reference type persisted in a ZooKeeper node.

    Implements the Readable, VersionedWritable and Watchable protocols.
    """

    def __init__(
        self,
        path: str,
        default: Optional[T] = None,
        validator: Optional[Validator] = None,
        codec: Optional[Codec] = None,
        max_update_attempts: int = DEFAULT_MAX_UPDATE_ATTEMPTS,
        max_backoff_ms: int = MAX_BACKOFF_MS,
    ) -> None:
        if max_update_attempts < 1:
            raise ValueError("max_update_attempts must be at least 1")
        _validate(validator, default)
        self._path = path
        self._client: Optional[ConnectionHandle] = None
        self._cache: AtomicCell[Snapshot[T]] = AtomicCell(Snapshot.unpersisted(default))
        self._validator = validator
        self._commit_lock = threading.Lock()
        self._watches = WatchRegistry()
        self._versioned_watches = WatchRegistry()
        self._codec = codec
        self.max_update_attempts = max_update_attempts
        self.max_backoff_ms = max_backoff_ms
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Read interface

    @property
    def path(self) -> str:
        return self._path

    @property
    def value(self) -> T:
        return self._cache.get().value

    def get(self) -> T:
        """Explicit getter (alias for value property)."""
        return self.value

    @property
    def versioned_value(self) -> Tuple[T, int]:
        return self._cache.get().versioned

    def get_versioned(self) -> Tuple[T, int]:
        """Explicit getter (alias for versioned_value property)."""
        return self.versioned_value

    @property
    def metadata(self) -> Mapping[str, Any]:
        """The ZooKeeper stat of the cached value."""
        return self._cache.get().stat

    @property
    def codec(self) -> Codec:
        return self._codec if self._codec is not None else get_default_codec()

    @property
    def connected(self) -> bool:
        client = self._client
        return bool(client is not None and client.connected)

    # ------------------------------------------------------------------
    # Connection

    def connect(self, client: ConnectionHandle) -> "ZRef[T]":
        """
        Bind ``client``, make sure the node exists and boot the cache.

        A missing node is created with the current value. A degenerate node
        (empty payload at version 0, typically a placeholder created by another
        process) is overwritten with the current value. Any other node is
        adopted as-is.

        Raises:
            BootError: the node could not be created or initialised. The
                client is unbound again.
        """
        self._client = client
        try:
            stat = client.exists(self._path)
            if stat is None:
                self._create(client)
            elif stat.dataLength == 0 and stat.version == 0:
                logging.info(f"Updating degenerate node {self._path} with default value")
                if not self.compare_version_and_set(stat.version, self.value):
                    raise BootError(f"Can't update degenerate node {self._path}")
        except BootError:
            self._client = None
            raise
        except Exception as e:
            self._client = None
            raise BootError(f"Can't initialise node {self._path}: {e}") from e
        self._process_update(WatchedEvent(BOOT, None, self._path))
        return self

    def _create(self, client: ConnectionHandle) -> None:
        logging.debug(f"Node {self._path} does not exist, creating it and assigning default value")
        data = self.codec.serialize(self.value)
        try:
            client.create(self._path, data, makepath=True)
        except NodeExistsError:
            logging.debug(f"Node {self._path} was created concurrently, adopting it")

    def disconnect(self) -> "ZRef[T]":
        """Disassociate the client and disable writes."""
        self._client = None
        return self

    def close(self) -> None:
        """Disconnect and stop the watch dispatcher once queued dispatches finish."""
        self.disconnect()
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ------------------------------------------------------------------
    # Update processing

    def _process_update(self, event: WatchedEvent) -> None:
        """
        Handle a watch event (or the synthetic boot event) for this node.

        Runs on kazoo's event thread and never raises.
        """
        event_type, keeper_state, path = event.type, event.state, event.path
        logging.debug(f"Change {path} {event_type} {keeper_state}")
        if path != self._path:
            logging.error(
                f"ZNode at path {self._path} got event ({path} {event_type} {keeper_state})"
            )
            return

        if event_type == EventType.DELETED and keeper_state == KeeperState.CONNECTED:
            logging.info(f"Node {self._path} deleted")
        elif (event_type == BOOT and keeper_state is None) or (
            event_type == EventType.CHANGED and keeper_state == KeeperState.CONNECTED
        ):
            client = self._client
            if client is None:
                logging.debug(f"Ignoring {event_type} for disconnected {self._path}")
                return
            try:
                self._refresh(client, event)
            except Exception as e:
                logging.error(
                    f"Error processing inbound update from {self._path} "
                    f"[{event_type} {keeper_state}]: {e}",
                    exc_info=True,
                )
        else:
            logging.warning(
                f"Unexpected event:state [{event_type}:{keeper_state}] while watching {self._path}"
            )

    def _refresh(self, client: ConnectionHandle, event: WatchedEvent) -> None:
        # kazoo keeps one registration per path and callable; bound methods of
        # the same reference compare equal.
        data, stat = client.get(self._path, watch=self._process_update)
        value = self.codec.deserialize(data)
        new = Snapshot(value, freeze_stat(stat))

        # Validation, commit and dispatch submission are serialized with each
        # other and with set_validator; watches see changes in commit order.
        with self._commit_lock:
            try:
                _validate(self._validator, value)
            except ValidationError:
                logging.error(
                    f"Rejected invalid value for {self._path} at version {new.version} "
                    f"[{event.type} {event.state}]: {value!r}"
                )
                return

            while True:
                old = self._cache.get()
                if self._client is not client:
                    logging.debug(f"Dropping update of {self._path} read before disconnect")
                    return
                if dict(new.stat) == dict(old.stat):
                    logging.debug(f"No change to {self._path} at version {new.version}")
                    return
                if not _is_newer(new, old):
                    logging.debug(
                        f"Dropping stale update of {self._path} [{old.version} -> {new.version}]"
                    )
                    return
                if self._cache.compare_and_set(old, new):
                    break

            if old.version >= 0 and new.version - old.version > 1:
                logging.warning(
                    f"Received non-sequential version [{old.version} -> {new.version}] "
                    f"for {self._path} ({event.type} {event.state})"
                )
            self._dispatch(old, new)

    # ------------------------------------------------------------------
    # Watch dispatch

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix=f"drcfg-watch:{self._path}"
                )
            return self._executor

    def _dispatch(self, old: Snapshot[T], new: Snapshot[T]) -> None:
        if not self._watches and not self._versioned_watches:
            return
        self._get_executor().submit(
            self._notify, self._watches.snapshot(), self._versioned_watches.snapshot(), old, new
        )

    def _notify(
        self,
        watches: Mapping[Hashable, WatchFunction],
        versioned_watches: Mapping[Hashable, WatchFunction],
        old: Snapshot[T],
        new: Snapshot[T],
    ) -> None:
        for key, fn in watches.items():
            self._call_watch(key, fn, old.value, new.value)
        for key, fn in versioned_watches.items():
            self._call_watch(key, fn, old.versioned, new.versioned)

    def _call_watch(self, key: Hashable, fn: WatchFunction, old: Any, new: Any) -> None:
        try:
            fn(key, self, old, new)
        except Exception as e:
            logging.error(f"Error in watcher {key!r} of {self._path}: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Validator and watches

    @property
    def validator(self) -> Optional[Validator]:
        return self._validator

    def set_validator(self, validator: Optional[Validator]) -> "ZRef[T]":
        """
        Install ``validator`` after checking it accepts the current value.

        Raises:
            ValidationError: the current value does not pass ``validator``.
        """
        with self._commit_lock:
            _validate(validator, self.value)
            self._validator = validator
        return self

    @property
    def watches(self) -> Mapping[Hashable, WatchFunction]:
        return self._watches.snapshot()

    @property
    def versioned_watches(self) -> Mapping[Hashable, WatchFunction]:
        return self._versioned_watches.snapshot()

    def add_watch(self, key: Hashable, fn: WatchFunction) -> "ZRef[T]":
        """Call ``fn(key, ref, old_value, new_value)`` after every committed change."""
        self._watches.add(key, fn)
        return self

    def remove_watch(self, key: Hashable) -> "ZRef[T]":
        self._watches.remove(key)
        return self

    def add_versioned_watch(self, key: Hashable, fn: WatchFunction) -> "ZRef[T]":
        """Like add_watch, but ``fn`` gets ``(value, version)`` pairs."""
        self._versioned_watches.add(key, fn)
        return self

    def remove_versioned_watch(self, key: Hashable) -> "ZRef[T]":
        self._versioned_watches.remove(key)
        return self

    # ------------------------------------------------------------------
    # Write interface

    def _bound_client(self) -> ConnectionHandle:
        client = self._client
        if client is None:
            raise NotConnectedError(self._path)
        return client

    def compare_version_and_set(self, expected_version: int, new_value: T) -> bool:
        """
        Write ``new_value`` if the node is still at ``expected_version``.

        Returns False when the version no longer matches. The cache is not
        updated here; the change arrives through the node's watch.

        Raises:
            NotConnectedError: no client is bound.
            ValidationError: ``new_value`` fails the validator.
            NodeMissingError: the node has been deleted.
        """
        client = self._bound_client()
        _validate(self._validator, new_value)
        try:
            client.set(self._path, self.codec.serialize(new_value), version=expected_version)
        except BadVersionError:
            return False
        return True

    def reset(self, new_value: T) -> T:
        """Unconditionally write ``new_value`` and return it."""
        self.compare_version_and_set(UNPERSISTED_VERSION, new_value)
        return new_value

    def compare_and_set(self, old_value: T, new_value: T) -> bool:
        current = self._cache.get()
        if current.value != old_value:
            return False
        return self.compare_version_and_set(current.version, new_value)

    def swap(self, f: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Apply ``f(value, *args, **kwargs)`` and write the result at the cached
        version, retrying when another writer wins. The pause between attempts
        starts at 1ms and doubles each time, capped at ``max_backoff_ms``.

        Returns the locally computed value, which may become visible through
        ``value`` slightly later.

        Raises:
            RetryExhaustedError: every one of ``max_update_attempts`` attempts
                lost the race.
        """
        started = time.monotonic()
        delay_ms = INITIAL_BACKOFF_MS
        for attempt in range(1, self.max_update_attempts + 1):
            current = self._cache.get()
            candidate = f(current.value, *args, **kwargs)
            if self.compare_version_and_set(current.version, candidate):
                return candidate
            if attempt == self.max_update_attempts:
                break
            time.sleep(delay_ms / 1000.0)
            delay_ms = min(delay_ms * 2, self.max_backoff_ms)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        raise RetryExhaustedError(self._path, self.max_update_attempts, elapsed_ms)

    def __repr__(self):
        value, version = self.versioned_value
        return f"ZRef({self._path!r}, {value!r}, version={version})"


def zref(path: str, default: Any = None, **options: Any) -> ZRef:
    """
    Create a reference at ``path`` with ``default`` as its initial value.

    Options are ZRef keyword arguments: validator, codec, max_update_attempts,
    max_backoff_ms.
    """
    return ZRef(path, default, **options)


def connect(client: ConnectionHandle, ref: ZRef) -> ZRef:
    return ref.connect(client)


def disconnect(ref: ZRef) -> ZRef:
    return ref.disconnect()


def is_connected(ref: ZRef) -> bool:
    return ref.connected


def path_of(ref: ZRef) -> str:
    return ref.path
