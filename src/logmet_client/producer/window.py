"""Credit-based flow control and cumulative acknowledgment bookkeeping."""

import logging
from collections import deque
from typing import Deque, List

from ..errors import SequenceExhaustedError
from ..protocol.frames import MAX_SEQUENCE
from .buffer import DataRecord

logger = logging.getLogger(__name__)

DEFAULT_MAX_UNACKED = 100


class FlowControlWindow:
    """
    Tracks records that were sent but not yet acknowledged.

    Sequence numbers and ack state are per connection and are reset by
    ``reset()`` when a new connection is opened. The in-flight records are
    not: they survive reconnects and are retransmitted once the new
    handshake completes.
    """

    def __init__(self, max_unacked: int = DEFAULT_MAX_UNACKED, max_sequence: int = MAX_SEQUENCE):
        if max_unacked < 1:
            raise ValueError("max_unacked must be at least 1")
        self.max_unacked = max_unacked
        self.max_sequence = max_sequence
        self.in_flight: Deque[DataRecord] = deque()
        self.sequence = 0
        self.previous_ack = -1
        self.current_ack = -1

    def reset(self) -> None:
        """Start sequence and ack accounting over for a new connection."""
        self.sequence = 0
        self.previous_ack = -1
        self.current_ack = -1

    @property
    def has_credit(self) -> bool:
        return len(self.in_flight) < self.max_unacked

    def next_sequence(self) -> int:
        """
        Assign the sequence number for the next data frame.

        Raises:
            SequenceExhaustedError: The counter would pass ``max_sequence``.
                Logmet does not acknowledge numbers lower than a previous
                ack, so the connection has to be re-created instead.
        """
        if self.sequence + 1 > self.max_sequence:
            raise SequenceExhaustedError(
                f"Sequence number {self.sequence} reached the maximum of {self.max_sequence}"
            )
        self.sequence += 1
        return self.sequence

    def admit(self, record: DataRecord) -> None:
        if not self.has_credit:
            raise RuntimeError(f"In-flight window is full ({self.max_unacked} records)")
        self.in_flight.append(record)

    def acknowledge(self, ack_number: int, connected: bool) -> List[DataRecord]:
        """
        Record an inbound ack and release the records it covers.

        Ack 0 only marks the end of a handshake and releases nothing. Any
        other value acknowledges ``current - previous`` records from the
        front of the window, but only once the session is connected.
        """
        logger.info(f"Last ACK received: {ack_number}")

        if ack_number == 0 or not connected:
            self._advance(ack_number)
            return []

        count = ack_number - max(self.current_ack, 0)
        if count <= 0:
            # The window keeps counting from the highest ack seen
            logger.warning(
                f"Ignoring non-advancing ACK {ack_number} (previous {self.current_ack})"
            )
            return []
        self._advance(ack_number)

        if count > len(self.in_flight):
            logger.warning(
                f"ACK {ack_number} covers {count} records but only {len(self.in_flight)} are in flight"
            )
            count = len(self.in_flight)

        return [self.in_flight.popleft() for _ in range(count)]

    def _advance(self, ack_number: int) -> None:
        self.previous_ack = self.current_ack
        self.current_ack = ack_number

    def __len__(self) -> int:
        return len(self.in_flight)
