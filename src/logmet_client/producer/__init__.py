"""Transport-independent producer core: buffer, window and session state machine."""

from .buffer import TENANT_ID_KEY, DataRecord, PendingBuffer
from .session import (
    ClientIdentity,
    ConnectionState,
    ProducerSession,
    SendResult,
)
from .window import FlowControlWindow

__all__ = [
    "TENANT_ID_KEY",
    "ClientIdentity",
    "ConnectionState",
    "DataRecord",
    "FlowControlWindow",
    "PendingBuffer",
    "ProducerSession",
    "SendResult",
]
