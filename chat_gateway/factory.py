"""Build the configured gateway backend."""

import logging
from pathlib import Path
from typing import Optional, Union

from .base import PersistenceGateway
from .fallback import FallbackGateway
from .local_store import LocalStoreGateway
from .memory import InMemoryGateway
from .redis_gateway import RedisGateway

logger = logging.getLogger(__name__)

BACKENDS = ("memory", "local", "redis")


def create_gateway(backend: str = "redis",
                   redis_url: str = "redis://localhost:6379/0",
                   redis_prefix: str = "modernchat",
                   local_path: Union[str, Path] = "./data",
                   use_fallback: bool = True,
                   fallback: Optional[PersistenceGateway] = None) -> PersistenceGateway:
    """
    Create a gateway for the named backend.

    Remote backends are wrapped in a FallbackGateway over a local store when
    use_fallback is set. Raises ValueError for unknown backend names.
    """
    backend = (backend or "").strip().lower()
    if backend not in BACKENDS:
        raise ValueError(f"Unsupported storage backend: {backend!r}. Supported: {list(BACKENDS)}")

    if backend == "memory":
        gateway: PersistenceGateway = InMemoryGateway()
    elif backend == "local":
        gateway = LocalStoreGateway(local_path)
    else:
        gateway = RedisGateway(url=redis_url, prefix=redis_prefix)
        if use_fallback:
            gateway = FallbackGateway(gateway, fallback or LocalStoreGateway(local_path))

    logger.info(f"Using {gateway.name} storage gateway ({backend})")
    return gateway
