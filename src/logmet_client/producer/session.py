"""
Connection state machine for the Logmet producer.

``ProducerSession`` owns every piece of protocol state (connection state,
pending buffer, in-flight window, sequence/ack counters, backoff) but never
touches a socket or a timer. The asyncio driver in
``logmet_client.clients.connection`` feeds it events and executes the
effects it returns, in order.

Events
    TransportOpened      TLS session established, handshake can start
    TransportRejected    TLS peer could not be authorized
    BytesReceived        inbound bytes from the server
    TransportFailed      timeout, error, EOF or close

Effects
    OpenTransport        open a new TLS connection
    WriteFrame           write one frame to the current connection
    CloseTransport       tear the current connection down
    ScheduleReconnect    call ``start_connect`` again after a delay
    HandshakeCompleted   first handshake done, release ``connect()``
    ConnectFailed        fatal failure before the first handshake
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from ..errors import (
    BufferFullError,
    FatalAuthError,
    OversizedFrameError,
    SequenceExhaustedError,
)
from ..protocol.flatten import flatten_record
from ..protocol.frames import (
    MAX_FRAME_SIZE,
    MAX_SEQUENCE,
    AckFrame,
    AckKind,
    AckReader,
    encode_authentication,
    encode_data,
    encode_identification,
    encode_pairs,
    encode_window,
)
from ..utils.retry import ExponentialBackoff
from .buffer import DEFAULT_MAX_PENDING, DataRecord, PendingBuffer
from .window import DEFAULT_MAX_UNACKED, FlowControlWindow

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Connection states of a producer."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class TransportOpened:
    pass


@dataclass(frozen=True)
class TransportRejected:
    reason: str


@dataclass(frozen=True)
class BytesReceived:
    data: bytes


@dataclass(frozen=True)
class TransportFailed:
    reason: str
    idle: bool = False


Event = Union[TransportOpened, TransportRejected, BytesReceived, TransportFailed]


@dataclass(frozen=True)
class OpenTransport:
    pass


@dataclass(frozen=True)
class WriteFrame:
    frame: bytes


@dataclass(frozen=True)
class CloseTransport:
    final: bool = False


@dataclass(frozen=True)
class ScheduleReconnect:
    delay: float


@dataclass(frozen=True)
class HandshakeCompleted:
    pass


@dataclass(frozen=True)
class ConnectFailed:
    error: FatalAuthError


Effect = Union[OpenTransport, WriteFrame, CloseTransport, ScheduleReconnect,
               HandshakeCompleted, ConnectFailed]


@dataclass(frozen=True)
class ClientIdentity:
    """Who the producer claims to be during the handshake."""
    client_id: str
    tenant_id: str
    token: str
    super_tenant: bool = False


@dataclass(frozen=True)
class SendResult:
    """Outcome of an accepted ``send``."""
    connection_active: bool


class ProducerSession:
    """Pure state machine behind ``LogmetProducer``."""

    def __init__(
        self,
        identity: ClientIdentity,
        max_pending: int = DEFAULT_MAX_PENDING,
        max_unacked: int = DEFAULT_MAX_UNACKED,
        max_frame_size: int = MAX_FRAME_SIZE,
        backoff: Optional[ExponentialBackoff] = None,
        max_sequence: int = MAX_SEQUENCE
    ):
        self.identity = identity
        self.pending = PendingBuffer(max_pending)
        self.window = FlowControlWindow(max_unacked, max_sequence)
        self.max_frame_size = max_frame_size
        self.backoff = backoff or ExponentialBackoff()

        # Encoded once so that bad credentials fail at construction time
        self._identification_frame = encode_identification(identity.client_id)
        self._authentication_frame = encode_authentication(
            identity.tenant_id, identity.token, identity.super_tenant
        )

        self.state = ConnectionState.DISCONNECTED
        self.handshake_completed = False
        self.fatal_error: Optional[FatalAuthError] = None
        self.terminating = False
        self.terminated = False
        self._acks = AckReader()

        self.stats = {
            'records_accepted': 0,
            'records_rejected': 0,
            'records_sent': 0,
            'records_acked': 0,
            'records_dropped': 0,
            'frames_retransmitted': 0,
            'connection_attempts': 0,
            'reconnects': 0,
        }

    @property
    def connection_active(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def drained(self) -> bool:
        return len(self.pending) == 0 and len(self.window) == 0

    # --- caller operations ---

    def start_connect(self) -> List[Effect]:
        """Move to CONNECTING and ask the driver for a new transport."""
        if self.terminated or self.fatal_error is not None:
            return []
        if self.state is not ConnectionState.DISCONNECTED:
            logger.debug(f"Connect requested while {self.state.value}; ignoring")
            return []

        self.state = ConnectionState.CONNECTING
        self.window.reset()
        self._acks.reset()
        self.stats['connection_attempts'] += 1
        return [OpenTransport()]

    def enqueue(
        self,
        data: Mapping[str, Any],
        record_type: str,
        tenant_id: str
    ) -> Tuple[SendResult, List[Effect]]:
        """
        Accept a record into the pending buffer.

        Raises:
            BufferFullError: The buffer is saturated; the record is not kept.
        """
        active = self.connection_active

        if self.pending.full:
            self.stats['records_rejected'] += 1
            logger.warning(
                f"Buffer of data elements is full. Rejecting new data. "
                f"Connection state: {self.state.value}"
            )
            raise BufferFullError(self.pending.max_pending, active)

        self.pending.offer(DataRecord.build(data, record_type, tenant_id))
        self.stats['records_accepted'] += 1
        effects = self._drain() if active else []
        return SendResult(connection_active=active), effects

    def request_termination(self) -> List[Effect]:
        """Mark the session as terminating; closes at once if nothing is left."""
        if self.terminated:
            return []

        if self.fatal_error is not None:
            if not self.drained:
                logger.warning(
                    f"Discarding {len(self.pending) + len(self.window)} records; "
                    f"the producer never completed a handshake"
                )
            return self._shutdown()

        self.terminating = True
        return self.poll_termination()

    def poll_termination(self) -> List[Effect]:
        """Close once both the pending buffer and the window are empty."""
        if self.terminated or not self.terminating or not self.drained:
            return []
        return self._shutdown()

    # --- transport events ---

    def handle(self, event: Event) -> List[Effect]:
        if isinstance(event, BytesReceived):
            return self._on_bytes(event.data)
        if isinstance(event, TransportOpened):
            return self._on_opened()
        if isinstance(event, TransportFailed):
            return self._on_failed(event)
        if isinstance(event, TransportRejected):
            return self._on_rejected(event.reason)
        raise TypeError(f"Unknown session event: {event!r}")

    def _on_opened(self) -> List[Effect]:
        if self.state is not ConnectionState.CONNECTING:
            return []

        logger.info("Successfully established a connection with Logmet")
        logger.info(f"Identifying the Logmet client: {self.identity.client_id}")
        logger.info(
            f"Authenticating with Logmet with frame type: "
            f"{'S' if self.identity.super_tenant else 'T'}"
        )
        return [
            WriteFrame(self._identification_frame),
            WriteFrame(self._authentication_frame),
        ]

    def _on_rejected(self, reason: str) -> List[Effect]:
        if self.state is ConnectionState.DISCONNECTED:
            return []
        return self._credential_failure(
            f"SSL connection with Logmet has not been authorized. ERROR: {reason}"
        )

    def _on_failed(self, event: TransportFailed) -> List[Effect]:
        if self.terminated or self.state is ConnectionState.DISCONNECTED:
            logger.debug(f"Caught '{event.reason}' event. No action is being taken.")
            return []

        self.state = ConnectionState.DISCONNECTED
        if event.idle:
            logger.info(
                f"A '{event.reason}' event was caught. Proactively re-creating logmet connection."
            )
            return [CloseTransport(), self._reconnect_after(0.0)]

        delay = self.backoff.next_delay()
        logger.warning(
            f"A '{event.reason}' event was caught. The connection with Logmet was compromised. "
            f"Will attempt to reconnect in {delay} seconds."
        )
        return [CloseTransport(), self._reconnect_after(delay)]

    def _on_bytes(self, data: bytes) -> List[Effect]:
        if self.state is ConnectionState.DISCONNECTED:
            logger.debug(f"Ignoring {len(data)} bytes received while disconnected")
            return []

        effects: List[Effect] = []
        for frame in self._acks.feed(data):
            effects.extend(self._on_frame(frame))
            if self.state is ConnectionState.DISCONNECTED:
                break
        return effects

    def _on_frame(self, frame: AckFrame) -> List[Effect]:
        if frame.kind is AckKind.UNKNOWN_TYPE:
            logger.error(f"Received an unknown ACK type from Logmet: {chr(frame.frame_type)!r}")
            return []
        if frame.kind is AckKind.UNKNOWN_VERSION:
            logger.error(f"Received an unknown ACK version from Logmet: {chr(frame.version)!r}")
            return []
        if frame.kind is AckKind.UNAUTHORIZED:
            return self._credential_failure(
                "Invalid Logmet credentials; check your tenant id and password."
            )

        effects: List[Effect] = []
        released = self.window.acknowledge(frame.ack_number, self.connection_active)
        self.stats['records_acked'] += len(released)

        if frame.ack_number == 0:
            # Handshake done; anything still in flight was lost with the old connection
            effects.extend(self._retransmit())
            if self.state is ConnectionState.DISCONNECTED:
                return effects

            logger.info("Initialized the Logmet client. The Logmet handshake is complete.")
            self.backoff.reset()
            if not self.handshake_completed:
                self.handshake_completed = True
                effects.append(HandshakeCompleted())

        self.state = ConnectionState.CONNECTED
        effects.extend(self._drain())
        return effects

    # --- internals ---

    def _credential_failure(self, message: str) -> List[Effect]:
        logger.error(message)
        self.state = ConnectionState.DISCONNECTED
        effects: List[Effect] = [CloseTransport()]

        if not self.handshake_completed:
            self.fatal_error = FatalAuthError(message)
            effects.append(ConnectFailed(self.fatal_error))
        else:
            effects.append(self._reconnect_after(self.backoff.next_delay()))
        return effects

    def _reconnect_after(self, delay: float) -> ScheduleReconnect:
        self.stats['reconnects'] += 1
        return ScheduleReconnect(delay)

    def _force_reconnect(self, error: Exception) -> List[Effect]:
        logger.warning(f"{error}. Re-creating the Logmet connection.")
        self.state = ConnectionState.DISCONNECTED
        return [CloseTransport(), self._reconnect_after(self.backoff.next_delay())]

    def _frames_for(self, record: DataRecord, payload: Optional[bytes] = None) -> List[Effect]:
        if payload is None:
            payload = encode_pairs(flatten_record(record.fields), self.max_frame_size)

        sequence = self.window.next_sequence()
        logger.debug(f"Sending window frame and data frame with sequence number {sequence}")
        return [WriteFrame(encode_window(1)), WriteFrame(encode_data(sequence, payload))]

    def _retransmit(self) -> List[Effect]:
        if not self.window.in_flight:
            return []

        logger.info(f"Retransmitting {len(self.window)} unacknowledged records")
        effects: List[Effect] = []
        for record in list(self.window.in_flight):
            try:
                effects.extend(self._frames_for(record))
            except SequenceExhaustedError as e:
                effects.extend(self._force_reconnect(e))
                break
            self.stats['frames_retransmitted'] += 1
        return effects

    def _drain(self) -> List[Effect]:
        effects: List[Effect] = []
        while (
            self.state is ConnectionState.CONNECTED
            and len(self.pending) > 0
            and self.window.has_credit
        ):
            record = self.pending.popleft()
            try:
                payload = encode_pairs(flatten_record(record.fields), self.max_frame_size)
            except OversizedFrameError as e:
                self.stats['records_dropped'] += 1
                logger.error(f"Rejecting data element of type '{record.record_type}'. {e}")
                continue

            # Kept in flight even if the sequence runs out; resent after reconnect
            self.window.admit(record)
            try:
                effects.extend(self._frames_for(record, payload))
            except SequenceExhaustedError as e:
                effects.extend(self._force_reconnect(e))
                break
            self.stats['records_sent'] += 1
        return effects

    def _shutdown(self) -> List[Effect]:
        self.terminated = True
        self.state = ConnectionState.DISCONNECTED
        logger.info("Logmet client has been stopped.")
        return [CloseTransport(final=True)]

    def snapshot(self) -> Dict[str, Any]:
        """Counters and queue sizes for stats reporting."""
        return {
            **self.stats,
            'state': self.state.value,
            'handshake_completed': self.handshake_completed,
            'pending': len(self.pending),
            'in_flight': len(self.window),
            'max_pending': self.pending.max_pending,
            'max_unacked': self.window.max_unacked,
            'sequence': self.window.sequence,
            'next_retry_delay_seconds': self.backoff.current_delay,
            'terminating': self.terminating,
            'terminated': self.terminated,
        }
