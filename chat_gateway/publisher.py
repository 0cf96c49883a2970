# Publish record changes so every subscribed client sees them
import json  # Redis Pub/Sub transmits strings, so serialize the change to JSON.
from typing import Optional

import redis.asyncio as redis

from .base import Record


async def publish_change(client: redis.Redis, channel: str, key: str,
                         value: Optional[Record], previous: Optional[Record] = None) -> int:
    """
    Publish a record change to a channel.

    value is None for deletions; previous lets subscribers match a record
    that no longer exists. Returns the number of receivers Redis reports.
    """
    payload = {"key": key, "value": value, "previous": previous}
    return await client.publish(channel, json.dumps(payload))
