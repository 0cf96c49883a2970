# Listen for record changes on a pub/sub channel
import json
import logging
from typing import Any, AsyncIterator, Dict

from redis.asyncio.client import PubSub

logger = logging.getLogger(__name__)


async def listen_for_changes(pubsub: PubSub) -> AsyncIterator[Dict[str, Any]]:
    """
    Yield decoded change payloads from an already subscribed PubSub.

    Control messages (subscribe confirmations) are skipped, as are payloads
    that are not valid JSON.
    """
    async for message in pubsub.listen():
        if message.get("type") != "message":
            continue
        try:
            yield json.loads(message["data"])
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Dropping malformed change on {message.get('channel')}: {e}")
