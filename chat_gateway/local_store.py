"""
Local storage gateway backend.

Emulates browser local storage: every collection is a single JSON document
(``<collection>.json``) that is read whole and rewritten whole on each write.
This is the store FallbackGateway retries against when the remote backend
is unreachable.

File access goes through aiofiles. Each collection has its own lock, held
for the whole read-modify-write, so concurrent puts never drop records.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import aiofiles
import aiofiles.os

from .base import ChangeCallback, Predicate, Record, SubscriberRegistry, Subscription, WriteResult, match_all
from .errors import GatewayError

logger = logging.getLogger(__name__)


class LocalStoreGateway:
    """Gateway persisting collections as JSON files in one directory."""

    name = "local"

    def __init__(self, path: Union[str, Path] = "./data"):
        self.base_path = Path(path)
        self._subscribers = SubscriberRegistry()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._initialized = False

    async def _initialize(self) -> None:
        if self._initialized:
            return
        try:
            await aiofiles.os.makedirs(self.base_path, exist_ok=True)
        except OSError as e:
            raise GatewayError(f"Cannot create local store at {self.base_path}: {e}", self.name) from e
        self._initialized = True
        logger.info(f"Local store initialized at: {self.base_path.absolute()}")

    def _lock_for(self, collection: str) -> asyncio.Lock:
        return self._locks.setdefault(collection, asyncio.Lock())

    def _file_for(self, collection: str) -> Path:
        return self.base_path / f"{collection}.json"

    async def _load(self, collection: str) -> Dict[str, Record]:
        await self._initialize()
        path = self._file_for(collection)
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                data = json.loads(await f.read())
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            raise GatewayError(f"Cannot read collection {collection}: {e}", self.name) from e
        if not isinstance(data, dict):
            raise GatewayError(f"Collection {collection} is not a JSON object", self.name)
        return data

    async def _save(self, collection: str, records: Dict[str, Record]) -> None:
        path = self._file_for(collection)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            payload = json.dumps(records)
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(payload)
            await aiofiles.os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            raise GatewayError(f"Cannot write collection {collection}: {e}", self.name) from e

    async def get(self, collection: str, key: str) -> Optional[Record]:
        return (await self._load(collection)).get(key)

    async def put(self, collection: str, key: str, value: Record) -> WriteResult:
        async with self._lock_for(collection):
            records = await self._load(collection)
            previous = records.get(key)
            records[key] = value
            await self._save(collection, records)
        await self._subscribers.notify(collection, key, value, previous)
        return WriteResult.STORED

    async def delete(self, collection: str, key: str) -> bool:
        async with self._lock_for(collection):
            records = await self._load(collection)
            previous = records.pop(key, None)
            if previous is None:
                return False
            await self._save(collection, records)
        await self._subscribers.notify(collection, key, None, previous)
        return True

    async def query(self, collection: str, predicate: Predicate = match_all) -> List[Record]:
        return [record for record in (await self._load(collection)).values() if predicate(record)]

    async def subscribe(self, collection: str, predicate: Predicate, on_change: ChangeCallback) -> Subscription:
        return self._subscribers.add(collection, predicate, on_change)

    async def close(self) -> None:
        self._subscribers.clear()
