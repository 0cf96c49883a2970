"""Gateway that retries failed remote operations against a local store."""

import logging
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from .base import (
    ChangeCallback,
    CompositeSubscription,
    PersistenceGateway,
    Predicate,
    Record,
    Subscription,
    WriteResult,
    match_all,
)
from .errors import GatewayError, GatewayUnavailable

logger = logging.getLogger(__name__)


class FallbackGateway:
    """
    Wrap a primary (usually remote) gateway with a local fallback.

    Each operation is tried on the primary first. When the primary raises,
    the failure is logged and the same operation is retried once against the
    fallback, whose result is returned. Writes are never mirrored to both
    stores, so after an outage the two may disagree; nothing reconciles them.
    """

    name = "fallback"

    def __init__(self, primary: PersistenceGateway, fallback: PersistenceGateway):
        self.primary = primary
        self.fallback = fallback
        self.fallback_count = 0

    async def _run(self, action: str, call: Callable[[PersistenceGateway], Awaitable[Any]]) -> Tuple[Any, bool]:
        """Return (result, used_fallback)."""
        try:
            return await call(self.primary), False
        except (GatewayError, OSError) as e:
            logger.warning(f"{self.primary.name} {action} failed, retrying on {self.fallback.name}: {e}")
        self.fallback_count += 1
        try:
            return await call(self.fallback), True
        except (GatewayError, OSError) as e:
            logger.error(f"{self.fallback.name} {action} failed as well: {e}")
            raise GatewayUnavailable(f"{action} failed on primary and fallback stores: {e}", self.name) from e

    async def get(self, collection: str, key: str) -> Optional[Record]:
        result, _ = await self._run("get", lambda gw: gw.get(collection, key))
        return result

    async def put(self, collection: str, key: str, value: Record) -> WriteResult:
        result, used_fallback = await self._run("put", lambda gw: gw.put(collection, key, value))
        return WriteResult.STORED_LOCALLY if used_fallback else result

    async def delete(self, collection: str, key: str) -> bool:
        result, _ = await self._run("delete", lambda gw: gw.delete(collection, key))
        return result

    async def query(self, collection: str, predicate: Predicate = match_all) -> List[Record]:
        result, _ = await self._run("query", lambda gw: gw.query(collection, predicate))
        return result

    async def subscribe(self, collection: str, predicate: Predicate, on_change: ChangeCallback) -> CompositeSubscription:
        subscriptions: List[Subscription] = []
        for gateway in (self.primary, self.fallback):
            try:
                subscriptions.append(await gateway.subscribe(collection, predicate, on_change))
            except (GatewayError, OSError) as e:
                logger.warning(f"Cannot subscribe to {collection} on {gateway.name}: {e}")
        if not subscriptions:
            raise GatewayUnavailable(f"subscribe to {collection} failed on every store", self.name)
        return CompositeSubscription(subscriptions)

    async def close(self) -> None:
        await self.primary.close()
        await self.fallback.close()
