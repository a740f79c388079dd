"""
Lumberjack frame codec for the Logmet multi-tenant endpoint.

Outbound frames
    Identification   "1I" | u8 id_len | client_id
    Authentication   "2S" or "2T" | u8 tenant_len | tenant_id | u8 token_len | token
    Window           "1W" | u32 credit
    Data             "1D" | u32 sequence | u32 npairs | (u32 key_len | key | u32 value_len | value)*

Inbound frames
    Ack              "1A" | u32 ack_number
    Unauthorized     "0A"

All integers are big-endian, all strings UTF-8.
"""

import logging
import struct
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from ..errors import FrameEncodingError, OversizedFrameError

logger = logging.getLogger(__name__)


IDENTIFICATION_FRAME = b"1I"
SUPER_TENANT_AUTH_FRAME = b"2S"
TENANT_AUTH_FRAME = b"2T"
DATA_FRAME = b"1D"
WINDOW_FRAME = b"1W"

ACK_TYPE = ord("A")
VERSION_ACK = ord("1")
VERSION_UNAUTHORIZED = ord("0")

ACK_FRAME_SIZE = 6
DATA_HEADER_SIZE = 6  # "1D" + sequence

# Hard limit enforced by the remote side
MAX_FRAME_SIZE = 16000

MAX_SEQUENCE = 0xFFFFFFFF
MAX_SHORT_STRING = 0xFF

_U32 = struct.Struct(">I")


def _short_string(value: str, field: str) -> bytes:
    raw = value.encode("utf-8")
    if len(raw) > MAX_SHORT_STRING:
        raise FrameEncodingError(
            f"{field} is {len(raw)} bytes long; at most {MAX_SHORT_STRING} fit in a frame"
        )
    return bytes((len(raw),)) + raw


def encode_identification(client_id: str) -> bytes:
    """Build the identification frame that opens the handshake."""
    return IDENTIFICATION_FRAME + _short_string(client_id, "client id")


def encode_authentication(tenant_id: str, token: str, super_tenant: bool = False) -> bytes:
    """Build the authentication frame for a tenant (space id) or a supertenant."""
    header = SUPER_TENANT_AUTH_FRAME if super_tenant else TENANT_AUTH_FRAME
    return (
        header
        + _short_string(tenant_id, "tenant id")
        + _short_string(token, "token")
    )


def encode_window(credit: int = 1) -> bytes:
    """Build a window frame announcing ``credit`` upcoming data frames."""
    return WINDOW_FRAME + _U32.pack(credit)


def encode_pairs(
    pairs: Sequence[Tuple[str, str]],
    max_frame_size: int = MAX_FRAME_SIZE
) -> bytes:
    """
    Encode the key/value section of a data frame (pair count included).

    The size check runs before any sequence number is assigned so that a
    rejected record never leaves a gap in the sequence.

    Raises:
        OversizedFrameError: If the complete data frame would be
            ``max_frame_size`` bytes or larger.
    """
    parts = [_U32.pack(len(pairs))]
    for key, value in pairs:
        raw_key = key.encode("utf-8")
        raw_value = value.encode("utf-8")
        parts.append(_U32.pack(len(raw_key)))
        parts.append(raw_key)
        parts.append(_U32.pack(len(raw_value)))
        parts.append(raw_value)

    payload = b"".join(parts)
    size = DATA_HEADER_SIZE + len(payload)
    if size >= max_frame_size:
        raise OversizedFrameError(size, max_frame_size)
    return payload


def encode_data(sequence: int, payload: bytes) -> bytes:
    """Prefix an encoded pair section with the data frame header."""
    if not 0 <= sequence <= MAX_SEQUENCE:
        raise FrameEncodingError(f"sequence {sequence} does not fit in 32 bits")
    return DATA_FRAME + _U32.pack(sequence) + payload


class AckKind(Enum):
    """Classification of an inbound frame."""
    ACK = "ack"
    UNAUTHORIZED = "unauthorized"
    UNKNOWN_TYPE = "unknown_type"
    UNKNOWN_VERSION = "unknown_version"


@dataclass(frozen=True)
class AckFrame:
    """Decoded inbound frame."""
    kind: AckKind
    version: int
    frame_type: int
    ack_number: Optional[int] = None


class AckReader:
    """
    Incremental decoder for the inbound byte stream.

    TCP does not preserve chunk boundaries, so several acks may arrive in one
    read and a single ack may be split across reads. Unknown frames cannot be
    delimited; they are reported once and the buffered bytes are discarded.
    """

    def __init__(self):
        self._buffer = bytearray()

    def reset(self):
        """Drop any partial frame left over from a previous connection."""
        self._buffer.clear()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> List[AckFrame]:
        """Consume ``data`` and return every frame completed by it."""
        self._buffer.extend(data)
        frames: List[AckFrame] = []

        while len(self._buffer) >= 2:
            version, frame_type = self._buffer[0], self._buffer[1]

            if frame_type != ACK_TYPE:
                frames.append(AckFrame(AckKind.UNKNOWN_TYPE, version, frame_type))
                self._buffer.clear()
                break

            if version == VERSION_UNAUTHORIZED:
                frames.append(AckFrame(AckKind.UNAUTHORIZED, version, frame_type))
                del self._buffer[:2]
                continue

            if version == VERSION_ACK:
                if len(self._buffer) < ACK_FRAME_SIZE:
                    break
                (ack_number,) = _U32.unpack_from(self._buffer, 2)
                del self._buffer[:ACK_FRAME_SIZE]
                frames.append(AckFrame(AckKind.ACK, version, frame_type, ack_number))
                continue

            frames.append(AckFrame(AckKind.UNKNOWN_VERSION, version, frame_type))
            self._buffer.clear()
            break

        return frames
