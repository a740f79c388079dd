"""Pytest configuration and shared fixtures."""

import asyncio
import struct
from typing import Any, Dict, List, Optional, Tuple

import pytest

from logmet_client.config.settings import LogmetSettings, ProducerConfig, RetryConfig
from logmet_client.producer.session import ClientIdentity, ProducerSession
from logmet_client.protocol.frames import ACK_TYPE, DATA_FRAME, VERSION_ACK, VERSION_UNAUTHORIZED
from logmet_client.utils.retry import ExponentialBackoff

TENANT_ID = "space-0001"
TOKEN = "logmet-token"
CLIENT_ID = "logmet_python_client_test"

UNAUTHORIZED_FRAME = bytes((VERSION_UNAUTHORIZED, ACK_TYPE))


def encode_ack(ack_number: int) -> bytes:
    """Build an ``"1A"`` frame, as the Logmet server sends it."""
    return bytes((VERSION_ACK, ACK_TYPE)) + struct.pack(">I", ack_number)


def decode_data(frame: bytes) -> Tuple[int, List[Tuple[str, str]]]:
    """Decode a data frame back into ``(sequence, pairs)``."""
    assert frame[:2] == DATA_FRAME, f"not a data frame: {frame[:2]!r}"
    sequence, count = struct.unpack_from(">II", frame, 2)
    offset = 10
    pairs = []
    for _ in range(count):
        (key_length,) = struct.unpack_from(">I", frame, offset)
        key = frame[offset + 4:offset + 4 + key_length].decode("utf-8")
        offset += 4 + key_length
        (value_length,) = struct.unpack_from(">I", frame, offset)
        value = frame[offset + 4:offset + 4 + value_length].decode("utf-8")
        offset += 4 + value_length
        pairs.append((key, value))
    return sequence, pairs


def unflatten_record(pairs) -> Dict[str, Any]:
    """Re-nest dotted pairs into mappings of strings."""
    nested: Dict[str, Any] = {}
    for dotted_key, value in pairs:
        *parents, leaf = dotted_key.split(".")
        node = nested
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = value
    return nested


class FakeWriter:
    """Stands in for ``asyncio.StreamWriter``; records every frame written."""

    def __init__(self):
        self.frames: List[bytes] = []
        self.close_calls = 0

    def write(self, data: bytes):
        self.frames.append(bytes(data))

    def is_closing(self) -> bool:
        return self.close_calls > 0

    def close(self):
        self.close_calls += 1

    async def wait_closed(self):
        return None

    def data_frames(self):
        return [decode_data(frame) for frame in self.frames if frame[:2] == DATA_FRAME]


class FakeLogmetServer:
    """
    Opener replacement that hands out in-memory stream pairs.

    With ``greeting`` set, every new connection already has those bytes
    queued, so the handshake ack is read right after the client identifies.
    """

    def __init__(self, greeting: Optional[bytes] = None):
        self.greeting = greeting
        self.failures: List[BaseException] = []
        self.connections = []
        self.open_calls = 0

    async def open(self, host, port, ssl_context):
        self.open_calls += 1
        if self.failures:
            raise self.failures.pop(0)

        reader = asyncio.StreamReader()
        writer = FakeWriter()
        if self.greeting is not None:
            reader.feed_data(self.greeting)
        self.connections.append((reader, writer))
        return reader, writer

    @property
    def reader(self) -> asyncio.StreamReader:
        return self.connections[-1][0]

    @property
    def writer(self) -> FakeWriter:
        return self.connections[-1][1]

    def ack(self, ack_number: int):
        self.reader.feed_data(encode_ack(ack_number))


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005):
    """Poll ``predicate`` on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def identity() -> ClientIdentity:
    return ClientIdentity(client_id=CLIENT_ID, tenant_id=TENANT_ID, token=TOKEN)


@pytest.fixture
def make_session(identity):
    """Factory for sessions with test-friendly defaults."""
    def _make(**kwargs) -> ProducerSession:
        return ProducerSession(identity, **kwargs)
    return _make


@pytest.fixture
def fast_backoff() -> ExponentialBackoff:
    return ExponentialBackoff(initial_delay=0.01, max_delay=0.05)


@pytest.fixture
def handshaking_server() -> FakeLogmetServer:
    return FakeLogmetServer(greeting=encode_ack(0))


@pytest.fixture
def test_settings() -> LogmetSettings:
    """Create test configuration."""
    return LogmetSettings(
        service_name="test-logmet-client",
        producer=ProducerConfig(
            endpoint="logs.example.test",
            port=9091,
            tenant_id=TENANT_ID,
            token=TOKEN,
            client_id=CLIENT_ID,
            buffer_size=5,
            max_unacked=3,
            inactivity_timeout_seconds=5,
            terminate_poll_interval_seconds=0.01
        ),
        retry=RetryConfig(initial_backoff_seconds=0.01, max_backoff_seconds=0.05)
    )


@pytest.fixture
def sample_event() -> Dict[str, Any]:
    """A toolchain event shaped like the records shipped in production."""
    return {
        "toolchain_guid": "9e7fb7bd-77f7-4be3-aba1-3ec7189f71de",
        "event": "unbind",
        "services": [{"service_id": "github", "tags": ["code"]}],
        "timestamp": 1457978965959.90,
        "details": {
            "dashboard_url": "https://github.example.test/markwill/mjwtest4",
            "tags": ["third-party", "code", "collaboration", "scm"],
            "my_array": [1, 4, 8],
            "enabled": True
        }
    }
