"""
drcfg Protocols - Reference and Client Interfaces
=================================================

Protocol-based interfaces for references and the ZooKeeper client they talk
to. ``ZRef`` implements ``Readable``, ``VersionedWritable`` and ``Watchable``;
``ConnectionHandle`` is what it needs from a client, which a
``kazoo.client.KazooClient`` satisfies.

Protocols are structural, so test doubles and alternative clients work without
inheriting from anything. They are ``@runtime_checkable`` for ``isinstance()``
checks.
"""

from typing import (
    Any,
    Callable,
    Hashable,
    Mapping,
    Optional,
    Protocol,
    Tuple,
    TypeVar,
    runtime_checkable,
)

T = TypeVar("T")

Validator = Callable[[Any], bool]
WatchFunction = Callable[[Hashable, Any, Any, Any], None]


@runtime_checkable
class Readable(Protocol[T]):
    """Read side of a reference. Reads never raise."""

    @property
    def path(self) -> str: ...

    @property
    def value(self) -> T: ...

    @property
    def versioned_value(self) -> Tuple[T, int]: ...

    @property
    def metadata(self) -> Mapping[str, Any]: ...


@runtime_checkable
class VersionedWritable(Protocol[T]):
    """
    Optimistic-concurrency write side of a reference.

    None of these update the local cache; the change becomes visible once the
    watch on the node reports it.
    """

    def compare_version_and_set(self, expected_version: int, new_value: T) -> bool: ...

    def compare_and_set(self, old_value: T, new_value: T) -> bool: ...

    def reset(self, new_value: T) -> T: ...

    def swap(self, f: Callable[..., T], *args: Any, **kwargs: Any) -> T: ...


@runtime_checkable
class Watchable(Protocol):
    """Validator and watch management."""

    @property
    def validator(self) -> Optional[Validator]: ...

    def set_validator(self, validator: Optional[Validator]) -> Any: ...

    def add_watch(self, key: Hashable, fn: WatchFunction) -> Any: ...

    def remove_watch(self, key: Hashable) -> Any: ...

    def add_versioned_watch(self, key: Hashable, fn: WatchFunction) -> Any: ...

    def remove_versioned_watch(self, key: Hashable) -> Any: ...


@runtime_checkable
class ConnectionHandle(Protocol):
    """
    The subset of ``KazooClient`` used by references.

    Failures are reported with kazoo exceptions: ``BadVersionError`` for a
    version mismatch, ``NoNodeError`` for a missing node, ``NodeExistsError``
    when creating over an existing node.
    """

    @property
    def connected(self) -> bool: ...

    def exists(self, path: str, watch: Optional[Callable] = None) -> Any: ...

    def create(self, path: str, value: bytes = b"", **kwargs: Any) -> str: ...

    def get(self, path: str, watch: Optional[Callable] = None) -> Tuple[bytes, Any]: ...

    def set(self, path: str, value: bytes, version: int = -1) -> Any: ...

    def delete(self, path: str, version: int = -1, recursive: bool = False) -> Any: ...
