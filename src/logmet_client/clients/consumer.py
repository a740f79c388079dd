"""Logmet query client (Elasticsearch search over HTTPS)."""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from ..config.settings import ConsumerConfig, LogmetSettings, RetryConfig
from ..errors import QueryError
from ..utils.logging import log_with_context
from ..utils.retry import exponential_backoff

logger = logging.getLogger(__name__)

BEARER_PREFIX = 'bearer '


def strip_bearer(token: str) -> str:
    if token.startswith(BEARER_PREFIX):
        return token[len(BEARER_PREFIX):]
    return token


class LogmetConsumer:
    """
    Runs Elasticsearch DSL queries against a tenant's Logmet indices.

    Can be used as an async context manager to share one HTTP session across
    queries; otherwise each query opens and closes its own session.
    """

    def __init__(self, config: ConsumerConfig, retry_config: Optional[RetryConfig] = None):
        self.config = config
        self.retry_config = retry_config or RetryConfig()
        self.session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_settings(cls, settings: LogmetSettings) -> "LogmetConsumer":
        return cls(settings.consumer, settings.retry)

    async def __aenter__(self):
        """Async context manager entry."""
        self.session = self._create_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self.session:
            await self.session.close()
            self.session = None

    def _create_session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds)
        )

    def search_url(self, tenant_id: str, record_type: str) -> str:
        return (
            f"{self.config.scheme}://{self.config.endpoint}"
            f"/elasticsearch/logstash-{tenant_id}-*/{record_type}/_search"
        )

    async def query(
        self,
        tenant_id: str,
        bearer_token: str,
        record_type: str,
        query_body: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        """
        Query Logmet for documents.

        Args:
            tenant_id: Id of the tenant who owns the data
            bearer_token: Bearer token of the tenant, with or without the
                ``bearer `` prefix
            record_type: Type of the Elasticsearch documents to search
            query_body: Query expressed in the Elasticsearch query DSL

        Returns:
            The ``hits.hits`` documents, or an empty list for an empty response

        Raises:
            QueryError: On transport failure, an error status or an
                unparseable response
        """
        url = self.search_url(tenant_id, record_type)
        headers = {
            'Accept': 'application/json',
            'Content-Type': 'application/json',
            'X-Auth-Token': strip_bearer(bearer_token),
            'X-Auth-Project-Id': tenant_id
        }
        body = json.dumps(query_body)

        log_with_context(
            logger, logging.INFO, 'Performing Logmet query',
            tenant_id=tenant_id, doc_type=record_type, query_body=body
        )

        if self.session is not None:
            text = await self._post(self.session, url, headers, body)
        else:
            async with self._create_session() as session:
                text = await self._post(session, url, headers, body)

        if not text:
            return []

        try:
            return json.loads(text)['hits']['hits']
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f'Unexpected response from Logmet query: {e}')
            raise QueryError(f"Could not parse Logmet query response: {e}") from e

    async def _post(
        self,
        session: aiohttp.ClientSession,
        url: str,
        headers: Dict[str, str],
        body: str
    ) -> str:
        async def _request():
            async with session.post(url, data=body, headers=headers) as response:
                response.raise_for_status()
                text = await response.text()
                logger.debug(f'Received {len(text)} characters of Logmet data')
                return text

        try:
            return await exponential_backoff(
                _request,
                max_attempts=self.retry_config.max_attempts,
                initial_delay=self.retry_config.initial_backoff_seconds,
                max_delay=self.retry_config.max_backoff_seconds,
                backoff_factor=self.retry_config.backoff_multiplier,
                jitter=self.retry_config.jitter,
                exceptions=(aiohttp.ClientError, asyncio.TimeoutError)
            )
        except aiohttp.ClientResponseError as e:
            logger.warning(f'ERROR returned by Logmet query: {e.status} {e.message}')
            raise QueryError(f"Logmet query failed with HTTP {e.status}: {e.message}", status=e.status) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f'ERROR returned by Logmet query: {e!r}')
            raise QueryError(f"Logmet query failed: {e!r}") from e
