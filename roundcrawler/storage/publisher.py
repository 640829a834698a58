"""
Streams raw fetched content to a Redis stream.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, List, Optional

import redis.asyncio as redis

from ..crawler.resource import FetchResult
from ..errors import StoreError


class RedisStreamPublisher:
    """
    Publishes fetched content with XADD.

    ``open()`` acquires one connection, meant to be used for a single
    partition and released when the partition is done.
    """

    def __init__(self, listeners: List[str], topic: str, maxlen: Optional[int] = None,
                 client_factory: Optional[Callable[[str], redis.Redis]] = None):
        if not listeners:
            raise StoreError("No stream listeners configured")
        self.listeners = listeners
        self.topic = topic
        self.maxlen = maxlen
        self.client_factory = client_factory or self._default_client
        self.logger = logging.getLogger(__name__)
        self.stats = {
            'connections_opened': 0,
            'messages_sent': 0
        }

    @staticmethod
    def _default_client(endpoint: str) -> redis.Redis:
        if '://' not in endpoint:
            endpoint = f"redis://{endpoint}"
        return redis.Redis.from_url(endpoint)

    async def _connect(self) -> redis.Redis:
        last_error: Optional[Exception] = None
        for endpoint in self.listeners:
            client = self.client_factory(endpoint)
            try:
                await client.ping()
                return client
            except redis.RedisError as e:
                last_error = e
                self.logger.warning(f"Stream endpoint {endpoint} unavailable: {e}")
                await client.aclose()
        raise StoreError(f"No stream endpoint reachable: {last_error}")

    @asynccontextmanager
    async def open(self) -> AsyncIterator[redis.Redis]:
        connection = await self._connect()
        self.stats['connections_opened'] += 1
        try:
            yield connection
        finally:
            await connection.aclose()

    async def send(self, connection: redis.Redis, result: FetchResult):
        resource = result.resource
        fields = {
            'url': resource.url,
            'id': resource.id,
            'content_type': result.content_type or '',
            'fetch_timestamp': resource.fetch_timestamp or time.time(),
            'content': result.raw_content or b'',
        }
        if self.maxlen:
            await connection.xadd(self.topic, fields, maxlen=self.maxlen, approximate=True)
        else:
            await connection.xadd(self.topic, fields)
        self.stats['messages_sent'] += 1
