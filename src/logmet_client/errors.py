"""Exception hierarchy for the Logmet client."""

from typing import Optional


class LogmetError(Exception):
    """Base class for all Logmet client errors."""


class FatalAuthError(LogmetError):
    """
    Credentials or the TLS session were rejected before the first handshake.

    Surfaced by ``LogmetProducer.connect``. The producer does not retry and
    stays unusable until it is reconstructed with valid credentials.
    """


class TransientConnectionError(LogmetError):
    """Transport failure after a successful handshake; retried with backoff."""


class BufferFullError(LogmetError):
    """The pending buffer is at capacity and the record was not accepted."""

    def __init__(self, capacity: int, connection_active: bool):
        super().__init__(
            f"Buffer of data elements is full (capacity={capacity}). "
            f"Connection active: {connection_active}"
        )
        self.capacity = capacity
        self.connection_active = connection_active


class FrameEncodingError(LogmetError, ValueError):
    """A value cannot be represented in a protocol frame."""


class OversizedFrameError(FrameEncodingError):
    """An encoded data frame reached the remote size limit."""

    def __init__(self, size: int, limit: int):
        super().__init__(
            f"Data frame of {size} bytes rejected; only frames smaller than "
            f"{limit} bytes are accepted by Logmet"
        )
        self.size = size
        self.limit = limit


class SequenceExhaustedError(TransientConnectionError):
    """The data frame sequence counter reached its ceiling."""


class QueryError(LogmetError):
    """A Logmet query failed in transport, HTTP status or response parsing."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status
