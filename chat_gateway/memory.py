"""In-memory gateway backend (mock data store)."""

import copy
import logging
from typing import Dict, List, Optional

from .base import ChangeCallback, Predicate, Record, SubscriberRegistry, Subscription, WriteResult, match_all

logger = logging.getLogger(__name__)


class InMemoryGateway:
    """
    Gateway over plain dictionaries.

    Records are deep-copied on the way in and out so callers never share
    state with the store. Nothing survives the process.
    """

    name = "memory"

    def __init__(self, initial: Optional[Dict[str, Dict[str, Record]]] = None):
        self._collections: Dict[str, Dict[str, Record]] = copy.deepcopy(initial) if initial else {}
        self._subscribers = SubscriberRegistry()

    async def get(self, collection: str, key: str) -> Optional[Record]:
        record = self._collections.get(collection, {}).get(key)
        return copy.deepcopy(record) if record is not None else None

    async def put(self, collection: str, key: str, value: Record) -> WriteResult:
        records = self._collections.setdefault(collection, {})
        previous = records.get(key)
        records[key] = copy.deepcopy(value)
        await self._subscribers.notify(collection, key, copy.deepcopy(value), previous)
        return WriteResult.STORED

    async def delete(self, collection: str, key: str) -> bool:
        previous = self._collections.get(collection, {}).pop(key, None)
        if previous is None:
            return False
        await self._subscribers.notify(collection, key, None, previous)
        return True

    async def query(self, collection: str, predicate: Predicate = match_all) -> List[Record]:
        return [
            copy.deepcopy(record)
            for record in self._collections.get(collection, {}).values()
            if predicate(record)
        ]

    async def subscribe(self, collection: str, predicate: Predicate, on_change: ChangeCallback) -> Subscription:
        return self._subscribers.add(collection, predicate, on_change)

    async def close(self) -> None:
        self._subscribers.clear()
        logger.debug("In-memory gateway closed")
