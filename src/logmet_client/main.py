"""Command line entry point: ship NDJSON records to Logmet, or query them back."""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional

from .clients.consumer import LogmetConsumer
from .clients.producer import LogmetProducer
from .config.settings import LogmetSettings, load_settings
from .errors import BufferFullError, FatalAuthError, LogmetError, QueryError
from .utils.logging import setup_logging

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "config/local.yaml"
BACKPRESSURE_WAIT_SECONDS = 0.1


class LogShipperService:
    """Reads newline-delimited JSON records and ships them through a producer."""

    def __init__(
        self,
        settings: LogmetSettings,
        record_type: str,
        tenant_id: Optional[str] = None,
        input_path: Optional[str] = None
    ):
        self.settings = settings
        self.record_type = record_type
        self.tenant_id = tenant_id or settings.producer.tenant_id
        self.input_path = input_path
        self.producer: Optional[LogmetProducer] = None
        self._shutdown_event = asyncio.Event()

        self.stats = {
            'lines_read': 0,
            'records_shipped': 0,
            'lines_skipped': 0,
            'backpressure_waits': 0,
        }

    async def start(self):
        """Connect, ship until EOF or a stop signal, then flush and close."""
        logger.info(f"Starting Logmet shipper for type '{self.record_type}'")
        self.producer = LogmetProducer.from_settings(self.settings)
        self._setup_signal_handlers()

        stop_task = asyncio.create_task(self._shutdown_event.wait())
        connect_task = asyncio.create_task(self.producer.connect())
        await asyncio.wait({connect_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

        if connect_task.done():
            # Raises FatalAuthError for rejected credentials
            connect_task.result()

            ship_task = asyncio.create_task(self._ship())
            done, _ = await asyncio.wait({ship_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            if ship_task not in done:
                logger.info("Stop requested; no further records will be read")
                ship_task.cancel()
            await asyncio.gather(ship_task, return_exceptions=True)
            if not ship_task.cancelled() and ship_task.exception() is not None:
                raise ship_task.exception()
        else:
            logger.info("Stop requested before the Logmet handshake completed")
        stop_task.cancel()

        logger.info("Flushing buffered records before shutdown")
        await self.producer.terminate()
        # An abandoned connect ends with LogmetError once the producer terminates
        await asyncio.gather(connect_task, return_exceptions=True)
        logger.info(f"Logmet shipper stopped: {json.dumps(self.stats)}")

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            logger.info(f"Received signal {signum}, initiating shutdown")
            self._shutdown_event.set()

        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, signal_handler, signum)

    async def _ship(self):
        async for line in self._read_lines():
            self.stats['lines_read'] += 1
            line = line.strip()
            if not line:
                continue

            try:
                record = json.loads(line)
            except ValueError as e:
                self.stats['lines_skipped'] += 1
                logger.warning(f"Skipping line {self.stats['lines_read']}: invalid JSON ({e})")
                continue
            if not isinstance(record, dict):
                self.stats['lines_skipped'] += 1
                logger.warning(f"Skipping line {self.stats['lines_read']}: not a JSON object")
                continue

            await self._send(record)

    async def _send(self, record: dict):
        while True:
            try:
                self.producer.send(record, self.record_type, self.tenant_id)
                self.stats['records_shipped'] += 1
                return
            except BufferFullError:
                self.stats['backpressure_waits'] += 1
                await asyncio.sleep(BACKPRESSURE_WAIT_SECONDS)

    async def _read_lines(self) -> AsyncIterator[str]:
        if self.input_path and self.input_path != '-':
            with open(self.input_path, 'r', encoding='utf-8') as f:
                for line in f:
                    yield line
            return

        reader = asyncio.StreamReader()
        loop = asyncio.get_running_loop()
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
        async for line in reader:
            yield line.decode('utf-8')

    async def health_check(self) -> dict:
        """Perform health check."""
        health_status = {
            "service": self.settings.service_name,
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {}
        }

        if self.producer:
            producer_health = await self.producer.health_check()
            health_status["components"]["producer"] = producer_health
            if not producer_health['healthy']:
                health_status["status"] = "unhealthy"

        return health_status


async def run_query(settings: LogmetSettings, args: argparse.Namespace) -> List[dict]:
    async with LogmetConsumer.from_settings(settings) as consumer:
        return await consumer.query(args.tenant_id, args.token, args.type, args.query_body)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="logmet_client", description="Logmet Lumberjack client")
    parser.add_argument(
        "--config",
        default=os.getenv("CONFIG_FILE", DEFAULT_CONFIG_FILE),
        help="YAML settings file (default: $CONFIG_FILE or config/local.yaml)"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    ship = subparsers.add_parser("ship", help="Ship newline-delimited JSON records to Logmet")
    ship.add_argument("--type", required=True, help="Record type stored with every record")
    ship.add_argument("--tenant-id", help="Owner tenant id (default: the producer tenant id)")
    ship.add_argument("input", nargs="?", default="-", help="Input file, or '-' for stdin")

    query = subparsers.add_parser("query", help="Query Logmet and print the matching documents")
    query.add_argument("--tenant-id", required=True)
    query.add_argument("--token", required=True, help="Bearer token, with or without 'bearer '")
    query.add_argument("--type", required=True, help="Document type to search")
    query.add_argument("query", help="Elasticsearch query DSL as JSON")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "query":
        try:
            args.query_body = json.loads(args.query)
        except ValueError as e:
            parser.error(f"QUERY is not valid JSON: {e}")

    config_file = args.config
    if config_file == DEFAULT_CONFIG_FILE and not os.path.exists(config_file):
        config_file = None
    settings = load_settings(config_file)
    setup_logging(settings.logging, settings.service_name)

    try:
        if args.command == "ship":
            service = LogShipperService(settings, args.type, args.tenant_id, args.input)
            asyncio.run(service.start())
        else:
            hits = asyncio.run(run_query(settings, args))
            print(json.dumps(hits, indent=2))
    except FatalAuthError as e:
        logger.error(f"Could not connect to Logmet: {e}")
        return 2
    except QueryError as e:
        logger.error(f"Query failed: {e}")
        return 1
    except LogmetError as e:
        logger.error(f"Service failed: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
