"""Persistence gateway: one get/put/subscribe interface over swappable stores."""

from .base import (
    CONVERSATIONS,
    MESSAGES,
    REGISTRATIONS,
    SESSIONS,
    USERS,
    CompositeSubscription,
    PersistenceGateway,
    Subscription,
    WriteResult,
)
from .errors import GatewayError, GatewayUnavailable
from .factory import create_gateway
from .fallback import FallbackGateway
from .local_store import LocalStoreGateway
from .memory import InMemoryGateway
from .redis_gateway import RedisGateway

__all__ = [
    "CONVERSATIONS",
    "MESSAGES",
    "REGISTRATIONS",
    "SESSIONS",
    "USERS",
    "CompositeSubscription",
    "FallbackGateway",
    "GatewayError",
    "GatewayUnavailable",
    "InMemoryGateway",
    "LocalStoreGateway",
    "PersistenceGateway",
    "RedisGateway",
    "Subscription",
    "WriteResult",
    "create_gateway",
]
