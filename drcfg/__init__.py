"""
drcfg - Dynamic Runtime Configuration

Distributed atomic references persisted in ZooKeeper. Reads come from a local
cache kept current by node watches; writes are optimistic-concurrency updates
against the node's version.
"""

from .cell import UNPERSISTED_VERSION, AtomicCell, Snapshot
from .codec import (
    Codec,
    JsonCodec,
    WithMeta,
    get_default_codec,
    reset_default_codec,
    set_default_codec,
)
from .exceptions import (
    BootError,
    DecodeError,
    DrcfgError,
    NodeMissingError,
    NotConnectedError,
    RetryExhaustedError,
    ValidationError,
)
from .protocols import ConnectionHandle, Readable, VersionedWritable, Watchable
from .session import Session, SessionEvent, open_client
from .zref import (
    BOOT,
    DEFAULT_MAX_UPDATE_ATTEMPTS,
    ZRef,
    connect,
    disconnect,
    is_connected,
    path_of,
    zref,
)

__version__ = "0.1.0"

__all__ = [
    # References
    "ZRef",
    "zref",
    "connect",
    "disconnect",
    "is_connected",
    "path_of",
    "BOOT",
    "DEFAULT_MAX_UPDATE_ATTEMPTS",
    "UNPERSISTED_VERSION",
    # Cache
    "AtomicCell",
    "Snapshot",
    # Codecs
    "Codec",
    "JsonCodec",
    "WithMeta",
    "get_default_codec",
    "set_default_codec",
    "reset_default_codec",
    # Interfaces
    "Readable",
    "VersionedWritable",
    "Watchable",
    "ConnectionHandle",
    # Sessions
    "Session",
    "SessionEvent",
    "open_client",
    # Exceptions
    "DrcfgError",
    "NotConnectedError",
    "ValidationError",
    "NodeMissingError",
    "RetryExhaustedError",
    "DecodeError",
    "BootError",
]
