"""
Error types raised by the backplane.

Connectivity problems surface as TransportError, wrapping the underlying
redis error. Malformed channel payloads are raised by the decoders and
handled at each listener.
"""

from contextlib import contextmanager
from typing import Iterator

from redis.exceptions import RedisError


class BackplaneError(Exception):
    """Base class for backplane errors."""


class NotConnectedError(BackplaneError):
    """Operation attempted before connect() or after disconnect()."""

    def __init__(self, message: str = "Backplane not connected"):
        super().__init__(message)


class NotFoundError(BackplaneError):
    """A record the operation depends on does not exist."""


class TransportError(BackplaneError):
    """The shared store or a pub/sub channel failed."""


class MalformedMessageError(BackplaneError):
    """A channel payload could not be decoded into the expected shape."""


@contextmanager
def transport_errors(operation: str) -> Iterator[None]:
    """Re-raise redis failures inside the block as TransportError."""
    try:
        yield
    except RedisError as e:
        raise TransportError(f"{operation} failed: {e}") from e
