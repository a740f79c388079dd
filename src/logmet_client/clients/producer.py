"""Public producer API for shipping records to Logmet."""

import logging
import socket
import ssl
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from ..config.settings import LogmetSettings
from ..producer.buffer import DEFAULT_MAX_PENDING
from ..producer.session import ClientIdentity, ConnectionState, ProducerSession, SendResult
from ..producer.window import DEFAULT_MAX_UNACKED
from ..protocol.frames import MAX_FRAME_SIZE
from ..utils.retry import ExponentialBackoff
from ..version import __version__
from .connection import (
    DEFAULT_INACTIVITY_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    ConnectionManager,
    Opener,
    create_ssl_context,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectResult:
    """Outcome of a successful ``connect``."""
    handshake_completed: bool


def default_client_id() -> str:
    return f"logmet_python_client_v{__version__}_{socket.gethostname()}"


class LogmetProducer:
    """
    Ships structured records to Logmet over the Lumberjack protocol.

    ``send`` is synchronous and only buffers; frames are written from the
    event loop as the flow-control window allows. Lost connections are
    re-established in the background and unacknowledged records are resent.

    Example:
        producer = LogmetProducer("logs.opvis.bluemix.net", 9091, space_id, token)
        await producer.connect()
        producer.send({"event": "bind"}, "toolchain", space_id)
        await producer.terminate()
    """

    def __init__(
        self,
        endpoint: str,
        port: int,
        tenant_or_supertenant_id: str,
        logmet_token: str,
        is_super_tenant: bool = False,
        buffer_size: Optional[int] = None,
        *,
        max_unacked: int = DEFAULT_MAX_UNACKED,
        max_frame_size: int = MAX_FRAME_SIZE,
        inactivity_timeout: float = DEFAULT_INACTIVITY_TIMEOUT,
        terminate_poll_interval: float = DEFAULT_POLL_INTERVAL,
        client_id: Optional[str] = None,
        backoff: Optional[ExponentialBackoff] = None,
        ssl_context: Optional[ssl.SSLContext] = None,
        opener: Optional[Opener] = None
    ):
        self.endpoint = endpoint
        self.port = port
        self.tenant_id = tenant_or_supertenant_id
        self.is_super_tenant = is_super_tenant

        max_pending = int(buffer_size) if buffer_size else DEFAULT_MAX_PENDING
        identity = ClientIdentity(
            client_id=client_id or default_client_id(),
            tenant_id=tenant_or_supertenant_id,
            token=logmet_token,
            super_tenant=is_super_tenant
        )
        self.session = ProducerSession(
            identity,
            max_pending=max_pending,
            max_unacked=max_unacked,
            max_frame_size=max_frame_size,
            backoff=backoff
        )
        self._connection = ConnectionManager(
            self.session,
            endpoint,
            port,
            ssl_context=ssl_context if ssl_context is not None else create_ssl_context(),
            inactivity_timeout=inactivity_timeout,
            poll_interval=terminate_poll_interval,
            opener=opener
        )

    @classmethod
    def from_settings(cls, settings: LogmetSettings, opener: Optional[Opener] = None) -> "LogmetProducer":
        """Build a producer from loaded settings."""
        config = settings.producer
        return cls(
            config.endpoint,
            config.port,
            config.tenant_id,
            config.token,
            config.is_super_tenant,
            config.buffer_size,
            max_unacked=config.max_unacked,
            max_frame_size=config.max_frame_size,
            inactivity_timeout=config.inactivity_timeout_seconds,
            terminate_poll_interval=config.terminate_poll_interval_seconds,
            client_id=config.client_id,
            backoff=ExponentialBackoff.from_config(settings.retry),
            ssl_context=create_ssl_context(config.ca_file, config.verify_tls),
            opener=opener
        )

    @property
    def state(self) -> ConnectionState:
        return self.session.state

    @property
    def connection_active(self) -> bool:
        return self.session.connection_active

    async def connect(self) -> ConnectResult:
        """
        Connect and complete the Logmet handshake.

        Returns once the first handshake succeeds; further calls return the
        same result without reconnecting.

        Raises:
            FatalAuthError: Invalid credentials or an unauthorized TLS peer
                on the first attempt.
        """
        await self._connection.connect()
        return ConnectResult(handshake_completed=True)

    def send(self, data: Mapping[str, Any], record_type: str, tenant_id: str) -> SendResult:
        """
        Queue a record for delivery.

        Args:
            data: Record to ship; nested mappings are flattened into dotted keys
            record_type: Elasticsearch type stored under ``type``
            tenant_id: Owner of the record, stored under ``ALCH_TENANT_ID``

        Returns:
            Whether a connection was active when the record was accepted

        Raises:
            BufferFullError: The pending buffer is full; retry later.
        """
        return self._connection.send(data, record_type, tenant_id)

    async def terminate(self) -> None:
        """Flush buffered and unacknowledged records, then close the connection."""
        await self._connection.terminate()

    def get_stats(self) -> Dict[str, Any]:
        """Get producer statistics."""
        return {
            'endpoint': f"{self.endpoint}:{self.port}",
            'tenant_id': self.tenant_id,
            'is_super_tenant': self.is_super_tenant,
            'reconnect_scheduled': self._connection.reconnect_pending,
            **self.session.snapshot(),
        }

    async def health_check(self) -> Dict[str, Any]:
        """Perform health check on the producer."""
        stats = self.get_stats()

        health_status = {
            'healthy': True,
            'issues': [],
            'stats': stats
        }

        if self.session.fatal_error is not None:
            health_status['healthy'] = False
            health_status['issues'].append(f'Fatal error: {self.session.fatal_error}')

        if stats['terminated']:
            health_status['healthy'] = False
            health_status['issues'].append('Producer terminated')
        elif not self.connection_active:
            health_status['healthy'] = False
            health_status['issues'].append(f"Not connected to Logmet (state: {stats['state']})")

        if stats['pending'] >= stats['max_pending']:
            health_status['healthy'] = False
            health_status['issues'].append(f"Pending buffer full: {stats['pending']}")

        return health_status
