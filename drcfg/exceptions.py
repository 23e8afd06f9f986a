"""
drcfg Exceptions
================

Errors raised by references. Version conflicts are not errors: conditional
writes report them by returning ``False``.

Missing nodes surface as kazoo's own ``NoNodeError``, re-exported here as
``NodeMissingError`` so callers do not need to import kazoo to catch it.
"""

from kazoo.exceptions import NoNodeError

NodeMissingError = NoNodeError


class DrcfgError(Exception):
    """Base class for drcfg errors."""

    pass


class NotConnectedError(DrcfgError):
    """A write was attempted on a reference with no bound client."""

    def __init__(self, path: str):
        super().__init__(f"Reference {path} is not connected")
        self.path = path


class ValidationError(DrcfgError, ValueError):
    """A candidate value was rejected by the reference's validator."""

    def __init__(self, message: str = "Invalid reference state", value=None):
        super().__init__(message)
        self.value = value


class DecodeError(DrcfgError):
    """A codec could not decode a payload."""

    pass


class BootError(DrcfgError):
    """The node could not be created or initialised while connecting."""

    pass


class RetryExhaustedError(DrcfgError):
    """swap() lost the race too many times."""

    def __init__(self, path: str, attempts: int, elapsed_ms: int):
        super().__init__(
            f"Aborting update of {path} after {attempts} failures over ~{elapsed_ms}ms"
        )
        self.path = path
        self.attempts = attempts
        self.elapsed_ms = elapsed_ms
