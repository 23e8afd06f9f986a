"""
drcfg Codec - Value Serialization
=================================

Converts reference values to and from the bytes stored in a znode.

The default ``JsonCodec`` writes UTF-8 JSON so that node contents stay readable
with ``zkCli.sh get``. Values may carry metadata by wrapping them in
``WithMeta``; the wrapper is written as a small envelope object and restored
on the way back in, at any nesting depth:

    >>> codec = JsonCodec()
    >>> codec.serialize(WithMeta(["A"], {"foo": True}))
    b'{"__meta__": {"foo": true}, "__value__": ["A"]}'

The codec used by references that were not given one explicitly is process
wide. Override it with ``set_default_codec()``; ``reset_default_codec()``
puts ``JsonCodec`` back.
"""

import json
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Protocol, runtime_checkable

from .exceptions import DecodeError

META_KEY = "__meta__"
VALUE_KEY = "__value__"
DICT_KEY = "__dict__"

# Objects shaped like one of these would be read back as a tagged form.
_RESERVED_SHAPES = (frozenset((META_KEY, VALUE_KEY)), frozenset((DICT_KEY,)))


@dataclass
class WithMeta:
    """A value with attached metadata."""

    value: Any
    meta: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class Codec(Protocol):
    """Structural interface for value codecs."""

    def serialize(self, value: Any) -> bytes: ...

    def deserialize(self, data: bytes) -> Any: ...


class JsonCodec:
    """
    Human-readable JSON codec with ``WithMeta`` support.

    Every value it accepts reads back equal. Tuples, sets and dicts with
    non-string keys would not, so they raise ``TypeError``. A plain dict shaped
    like a tagged object is written as ``{"__dict__": [[key, value], ...]}``.
    """

    def __init__(self, encoding: str = "utf-8", sort_keys: bool = True):
        self.encoding = encoding
        self.sort_keys = sort_keys

    def _encode(self, value: Any) -> Any:
        if isinstance(value, WithMeta):
            return {META_KEY: self._encode(value.meta), VALUE_KEY: self._encode(value.value)}
        if isinstance(value, dict):
            for key in value:
                if not isinstance(key, str):
                    raise TypeError(f"Object keys must be str, got {key!r}")
            encoded = {key: self._encode(item) for key, item in value.items()}
            if frozenset(encoded) in _RESERVED_SHAPES:
                pairs = sorted(encoded.items()) if self.sort_keys else encoded.items()
                return {DICT_KEY: [[key, item] for key, item in pairs]}
            return encoded
        if isinstance(value, list):
            return [self._encode(item) for item in value]
        if isinstance(value, (tuple, set, frozenset)):
            raise TypeError(f"{type(value).__name__} would be read back as a list")
        return value

    @staticmethod
    def _decode_hook(obj: Dict[str, Any]) -> Any:
        keys = obj.keys()
        if keys == {META_KEY, VALUE_KEY}:
            return WithMeta(obj[VALUE_KEY], obj[META_KEY])
        if keys == {DICT_KEY} and isinstance(obj[DICT_KEY], list):
            return {key: item for key, item in obj[DICT_KEY]}
        return obj

    def serialize(self, value: Any) -> bytes:
        try:
            text = json.dumps(self._encode(value), sort_keys=self.sort_keys)
        except (TypeError, ValueError) as e:
            raise TypeError(f"Cannot serialize {value!r}: {e}") from e
        return text.encode(self.encoding)

    def deserialize(self, data: bytes) -> Any:
        if not isinstance(data, (bytes, bytearray)):
            raise DecodeError(f"Expected bytes, got {type(data).__name__}")
        try:
            return json.loads(data.decode(self.encoding), object_hook=self._decode_hook)
        except (UnicodeDecodeError, ValueError, TypeError) as e:
            raise DecodeError(f"Malformed payload {bytes(data)[:64]!r}: {e}") from e

    def __repr__(self):
        return f"JsonCodec(encoding={self.encoding!r})"


_default_codec: Codec = JsonCodec()
_default_codec_lock = threading.Lock()


def get_default_codec() -> Codec:
    """Return the process-wide codec."""
    return _default_codec


def set_default_codec(codec: Codec) -> Codec:
    """
    Install ``codec`` as the process-wide codec and return the previous one.

    References created without an explicit codec pick up the change on their
    next read or write.
    """
    global _default_codec
    if not isinstance(codec, Codec):
        raise TypeError(f"{codec!r} does not implement serialize/deserialize")
    with _default_codec_lock:
        previous = _default_codec
        _default_codec = codec
    return previous


def reset_default_codec() -> None:
    """Restore the JSON codec as the process-wide default. Used by tests."""
    global _default_codec
    with _default_codec_lock:
        _default_codec = JsonCodec()
