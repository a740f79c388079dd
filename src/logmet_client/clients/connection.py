"""
Asyncio driver for the Logmet producer session.

Owns the TLS stream pair, the reader task, the inactivity timeout and the
reconnect timer. Every transport occurrence is turned into a session event
and every effect returned by the session is executed here, one at a time on
the event loop.
"""

import asyncio
import errno
import logging
import socket
import ssl
from typing import Awaitable, Callable, List, Optional, Set, Tuple

from ..errors import LogmetError
from ..producer.session import (
    BytesReceived,
    CloseTransport,
    ConnectFailed,
    Effect,
    Event,
    HandshakeCompleted,
    OpenTransport,
    ProducerSession,
    ScheduleReconnect,
    TransportFailed,
    TransportOpened,
    TransportRejected,
    WriteFrame,
)

logger = logging.getLogger(__name__)

StreamPair = Tuple[asyncio.StreamReader, asyncio.StreamWriter]
Opener = Callable[[str, int, Optional[ssl.SSLContext]], Awaitable[StreamPair]]

DEFAULT_INACTIVITY_TIMEOUT = 30.0
DEFAULT_POLL_INTERVAL = 0.3
READ_SIZE = 4096


def create_ssl_context(ca_file: Optional[str] = None, verify: bool = True) -> ssl.SSLContext:
    """TLS context that rejects servers whose certificate cannot be verified."""
    context = ssl.create_default_context(cafile=ca_file)
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


async def open_tls_connection(
    host: str,
    port: int,
    ssl_context: Optional[ssl.SSLContext]
) -> StreamPair:
    return await asyncio.open_connection(host, port, ssl=ssl_context)


def _log_task_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error(
            f"Logmet connection task {task.get_name()} failed",
            exc_info=task.exception()
        )


class ConnectionManager:
    """Runs a ``ProducerSession`` against a real (or injected) stream."""

    def __init__(
        self,
        session: ProducerSession,
        endpoint: str,
        port: int,
        ssl_context: Optional[ssl.SSLContext] = None,
        inactivity_timeout: float = DEFAULT_INACTIVITY_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        opener: Optional[Opener] = None
    ):
        self.session = session
        self.endpoint = endpoint
        self.port = port
        self.ssl_context = ssl_context
        self.inactivity_timeout = inactivity_timeout
        self.poll_interval = poll_interval
        self._opener = opener or open_tls_connection

        self._writer: Optional[asyncio.StreamWriter] = None
        self._closing: Set[asyncio.Task] = set()
        self._open_task: Optional[asyncio.Task] = None
        self._read_task: Optional[asyncio.Task] = None
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._ready: Optional[asyncio.Future] = None

        # Bumped on every open and close; events from older generations are stale
        self._generation = 0

    @property
    def reconnect_pending(self) -> bool:
        return self._retry_handle is not None

    async def connect(self) -> None:
        """
        Start connecting and wait for the first handshake to complete.

        Transient failures are retried in the background and do not end the
        wait. Only a fatal credential failure is raised.

        Raises:
            FatalAuthError: Credentials or TLS session rejected before the
                first successful handshake.
        """
        if self._ready is None:
            if self.session.terminated:
                raise LogmetError("Producer has been terminated")
            self._ready = asyncio.get_running_loop().create_future()
            logger.info(f"Connecting to Logmet at {self.endpoint}:{self.port}")
            self._apply(self.session.start_connect())
        await asyncio.shield(self._ready)

    def send(self, data, record_type: str, tenant_id: str):
        result, effects = self.session.enqueue(data, record_type, tenant_id)
        self._apply(effects)
        return result

    async def terminate(self) -> None:
        """Close the connection once every buffered record is acknowledged."""
        self._apply(self.session.request_termination())

        if not self.session.terminated:
            logger.info(
                f"Started a timer to stop the Logmet client. "
                f"Poll frequency: {int(self.poll_interval * 1000)} ms"
            )
        while not self.session.terminated:
            await asyncio.sleep(self.poll_interval)
            self._apply(self.session.poll_termination())

        await self._wait_closed()

    # --- effect execution ---

    def _apply(self, effects: List[Effect]) -> None:
        for effect in effects:
            if isinstance(effect, WriteFrame):
                self._write(effect.frame)
            elif isinstance(effect, OpenTransport):
                self._open()
            elif isinstance(effect, CloseTransport):
                self._close_transport()
                if effect.final:
                    self._cancel_reconnect()
                    self._abandon_connect()
            elif isinstance(effect, ScheduleReconnect):
                self._schedule_reconnect(effect.delay)
            elif isinstance(effect, HandshakeCompleted):
                if self._ready is not None and not self._ready.done():
                    self._ready.set_result(True)
            elif isinstance(effect, ConnectFailed):
                if self._ready is not None and not self._ready.done():
                    self._ready.set_exception(effect.error)
            else:
                raise TypeError(f"Unknown session effect: {effect!r}")

    def _dispatch(self, event: Event, generation: int) -> None:
        if generation != self._generation:
            logger.debug(f"Ignoring {type(event).__name__} from a superseded connection")
            return
        self._apply(self.session.handle(event))

    def _write(self, frame: bytes) -> None:
        if self._writer is None or self._writer.is_closing():
            logger.warning(f"Dropping {len(frame)}-byte frame; no open connection")
            return
        self._writer.write(frame)

    def _open(self) -> None:
        self._generation += 1
        self._open_task = asyncio.get_running_loop().create_task(
            self._open_connection(self._generation)
        )
        self._open_task.add_done_callback(_log_task_failure)

    async def _open_connection(self, generation: int) -> None:
        try:
            reader, writer = await asyncio.wait_for(
                self._opener(self.endpoint, self.port, self.ssl_context),
                timeout=self.inactivity_timeout
            )
        except ssl.SSLCertVerificationError as e:
            logger.error(f"Failed to establish a connection with Logmet: {e}")
            reason = getattr(e, 'verify_message', None) or str(e)
            self._dispatch(TransportRejected(reason), generation)
            return
        except asyncio.TimeoutError:
            logger.warning(f"Connecting to {self.endpoint}:{self.port} timed out")
            self._dispatch(TransportFailed('timeout'), generation)
            return
        except OSError as e:
            if isinstance(e, socket.gaierror) or e.errno in (
                errno.ECONNREFUSED, errno.ENETUNREACH, errno.EHOSTUNREACH
            ):
                logger.warning('Connection refused or network down.')
            logger.debug(f"Connection attempt failed: {e!r}")
            self._dispatch(TransportFailed('error'), generation)
            return

        if generation != self._generation:
            # Closed or terminated while the connection was being opened
            writer.close()
            return

        self._writer = writer
        self._read_task = asyncio.get_running_loop().create_task(
            self._read_loop(reader, generation)
        )
        self._read_task.add_done_callback(_log_task_failure)
        self._dispatch(TransportOpened(), generation)

    async def _read_loop(self, reader: asyncio.StreamReader, generation: int) -> None:
        while generation == self._generation:
            try:
                data = await asyncio.wait_for(reader.read(READ_SIZE), timeout=self.inactivity_timeout)
            except asyncio.TimeoutError:
                self._dispatch(TransportFailed('timeout', idle=True), generation)
                return
            except OSError as e:
                logger.debug(f"Read failed: {e!r}")
                self._dispatch(TransportFailed('error'), generation)
                return

            if not data:
                self._dispatch(TransportFailed('end'), generation)
                return

            logger.debug(f"Received {len(data)} bytes from Logmet")
            self._dispatch(BytesReceived(data), generation)

    def _close_transport(self) -> None:
        self._generation += 1
        current = asyncio.current_task()

        for task in (self._read_task, self._open_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._read_task = None
        self._open_task = None

        writer, self._writer = self._writer, None
        if writer is not None:
            writer.close()
            # Tracked only until the close completes
            task = asyncio.get_running_loop().create_task(self._finish_close(writer))
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)
            task.add_done_callback(_log_task_failure)

    async def _finish_close(self, writer: asyncio.StreamWriter) -> None:
        try:
            await writer.wait_closed()
        except (OSError, ssl.SSLError) as e:
            logger.debug(f"Error while closing the Logmet connection: {e!r}")

    async def _wait_closed(self) -> None:
        if self._closing:
            await asyncio.gather(*list(self._closing))

    def _schedule_reconnect(self, delay: float) -> None:
        if self.session.terminated:
            return
        if self._retry_handle is not None:
            logger.debug("A reconnect is already scheduled")
            return
        self._retry_handle = asyncio.get_running_loop().call_later(delay, self._reconnect)

    def _reconnect(self) -> None:
        self._retry_handle = None
        logger.info(f"Reconnecting to Logmet at {self.endpoint}:{self.port}")
        self._apply(self.session.start_connect())

    def _cancel_reconnect(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def _abandon_connect(self) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(
                LogmetError("Producer terminated before the handshake completed")
            )
