"""Asyncio client for the Logmet Lumberjack protocol and the Logmet query API."""

from .clients import ConnectResult, LogmetConsumer, LogmetProducer
from .errors import (
    BufferFullError,
    FatalAuthError,
    LogmetError,
    OversizedFrameError,
    QueryError,
)
from .producer import ConnectionState, SendResult
from .version import __version__

__all__ = [
    "BufferFullError",
    "ConnectResult",
    "ConnectionState",
    "FatalAuthError",
    "LogmetConsumer",
    "LogmetError",
    "LogmetProducer",
    "OversizedFrameError",
    "QueryError",
    "SendResult",
    "__version__",
]
