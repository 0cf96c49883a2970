"""
Hosted real-time database backend on Redis.

Layout:
- ``<prefix>:<collection>``          hash, field = record key, value = JSON
- ``<prefix>:<collection>:changes``  pub/sub channel carrying every write

Subscriptions share one listener task per collection; the task reads the
changes channel and dispatches to the matching in-process subscribers.
"""

import asyncio
import json
import logging
from typing import Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from .base import ChangeCallback, Predicate, Record, SubscriberRegistry, Subscription, WriteResult, match_all
from .errors import GatewayError
from .publisher import publish_change
from .redis_client import create_redis_client
from .subscriber import listen_for_changes

logger = logging.getLogger(__name__)


class RedisGateway:
    """Gateway backed by Redis hashes with pub/sub change notification."""

    name = "redis"

    def __init__(self, client: Optional[redis.Redis] = None, url: str = "redis://localhost:6379/0",
                 prefix: str = "modernchat"):
        self.redis_client = client if client is not None else create_redis_client(url)
        self.prefix = prefix
        self._subscribers = SubscriberRegistry()
        self._listeners: Dict[str, asyncio.Task] = {}

    def _hash_key(self, collection: str) -> str:
        return f"{self.prefix}:{collection}"

    def _channel(self, collection: str) -> str:
        return f"{self.prefix}:{collection}:changes"

    def _fail(self, action: str, collection: str, error: Exception) -> GatewayError:
        return GatewayError(f"Redis {action} on {collection} failed: {error}", self.name)

    async def get(self, collection: str, key: str) -> Optional[Record]:
        try:
            raw = await self.redis_client.hget(self._hash_key(collection), key)
        except (RedisError, OSError) as e:
            raise self._fail("get", collection, e) from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise GatewayError(f"Corrupt record {collection}/{key}: {e}", self.name) from e

    async def put(self, collection: str, key: str, value: Record) -> WriteResult:
        try:
            await self.redis_client.hset(self._hash_key(collection), key, json.dumps(value))
            await publish_change(self.redis_client, self._channel(collection), key, value)
        except (RedisError, OSError) as e:
            raise self._fail("put", collection, e) from e
        return WriteResult.STORED

    async def delete(self, collection: str, key: str) -> bool:
        previous = await self.get(collection, key)
        if previous is None:
            return False
        try:
            await self.redis_client.hdel(self._hash_key(collection), key)
            await publish_change(self.redis_client, self._channel(collection), key, None, previous)
        except (RedisError, OSError) as e:
            raise self._fail("delete", collection, e) from e
        return True

    async def query(self, collection: str, predicate: Predicate = match_all) -> List[Record]:
        try:
            raw_records = await self.redis_client.hvals(self._hash_key(collection))
        except (RedisError, OSError) as e:
            raise self._fail("query", collection, e) from e

        records = []
        for raw in raw_records:
            try:
                record = json.loads(raw)
            except json.JSONDecodeError as e:
                logger.warning(f"Skipping corrupt record in {collection}: {e}")
                continue
            if predicate(record):
                records.append(record)
        return records

    async def subscribe(self, collection: str, predicate: Predicate, on_change: ChangeCallback) -> Subscription:
        subscription = self._subscribers.add(collection, predicate, on_change)
        if collection not in self._listeners:
            try:
                pubsub = self.redis_client.pubsub()
                await pubsub.subscribe(self._channel(collection))
            except (RedisError, OSError) as e:
                subscription.unsubscribe()
                raise self._fail("subscribe", collection, e) from e
            self._listeners[collection] = asyncio.create_task(self._listen(collection, pubsub))
        return subscription

    async def _listen(self, collection: str, pubsub) -> None:
        try:
            async for change in listen_for_changes(pubsub):
                await self._subscribers.notify(
                    collection, change.get("key"), change.get("value"), change.get("previous")
                )
        except asyncio.CancelledError:
            raise
        except (RedisError, OSError) as e:
            logger.error(f"Redis listener for {collection} stopped: {e}")
        finally:
            self._listeners.pop(collection, None)
            try:
                await pubsub.aclose()
            except (RedisError, OSError) as e:
                logger.debug(f"Error closing pubsub for {collection}: {e}")

    async def close(self) -> None:
        tasks = list(self._listeners.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._listeners.clear()
        self._subscribers.clear()
        try:
            await self.redis_client.aclose()
        except (RedisError, OSError) as e:
            logger.debug(f"Error closing Redis client: {e}")
