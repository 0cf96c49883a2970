"""
Persistence gateway contract shared by every storage backend.

The chat services only ever talk to a ``PersistenceGateway``. Backends are
interchangeable strategies:
- InMemoryGateway: plain dictionaries, used for tests and demos
- LocalStoreGateway: JSON documents on disk, emulating browser local storage
- RedisGateway: hosted real-time database (hashes + pub/sub)
- FallbackGateway: wraps a remote backend with a local store
"""

import inspect
import logging
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union, runtime_checkable

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
Predicate = Callable[[Record], bool]
ChangeCallback = Callable[[str, Optional[Record]], Union[None, Awaitable[None]]]

# Collections used by the chat services
USERS = "users"
MESSAGES = "messages"
CONVERSATIONS = "conversations"
REGISTRATIONS = "registrations"
SESSIONS = "sessions"


class WriteResult(str, Enum):
    """Where a write ended up."""
    STORED = "stored"
    STORED_LOCALLY = "stored_locally"


def match_all(record: Record) -> bool:
    return True


class Subscription:
    """
    Handle returned by ``subscribe``.

    Calling ``unsubscribe`` more than once is harmless.
    """

    def __init__(self, collection: str, predicate: Predicate, callback: ChangeCallback,
                 on_cancel: Optional[Callable[["Subscription"], None]] = None):
        self.id = uuid.uuid4().hex
        self.collection = collection
        self.predicate = predicate
        self.callback = callback
        self.active = True
        self._on_cancel = on_cancel

    def matches(self, record: Optional[Record]) -> bool:
        if not self.active or record is None:
            return False
        try:
            return bool(self.predicate(record))
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"Subscription predicate rejected record: {e}")
            return False

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._on_cancel:
            self._on_cancel(self)


class CompositeSubscription:
    """Groups several subscriptions behind one unsubscribe handle."""

    def __init__(self, subscriptions: List[Subscription]):
        self.subscriptions = subscriptions

    @property
    def active(self) -> bool:
        return any(sub.active for sub in self.subscriptions)

    def unsubscribe(self) -> None:
        for sub in self.subscriptions:
            sub.unsubscribe()


async def deliver(callback: ChangeCallback, key: str, value: Optional[Record]) -> None:
    """Invoke a change callback, awaiting it when it is a coroutine function."""
    try:
        result = callback(key, value)
        if inspect.isawaitable(result):
            await result
    except Exception:
        # A broken subscriber must not fail the write that triggered it
        logger.exception(f"Subscriber callback failed for key {key}")


class SubscriberRegistry:
    """
    In-process fan-out of record changes to subscribers.

    Used directly by the in-memory and local store backends, and by the
    Redis backend to dispatch what its pub/sub listener receives.
    """

    def __init__(self):
        self._subscriptions: Dict[str, Dict[str, Subscription]] = {}

    def add(self, collection: str, predicate: Predicate, callback: ChangeCallback) -> Subscription:
        subscription = Subscription(collection, predicate, callback, on_cancel=self._remove)
        self._subscriptions.setdefault(collection, {})[subscription.id] = subscription
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        self._subscriptions.get(subscription.collection, {}).pop(subscription.id, None)

    def has_subscribers(self, collection: str) -> bool:
        return bool(self._subscriptions.get(collection))

    def count(self, collection: Optional[str] = None) -> int:
        if collection is not None:
            return len(self._subscriptions.get(collection, {}))
        return sum(len(subs) for subs in self._subscriptions.values())

    async def notify(self, collection: str, key: str, value: Optional[Record],
                     previous: Optional[Record] = None) -> None:
        """
        Deliver a change to every matching subscriber.

        Deletions carry ``value=None``; they are matched against the
        previous record so subscribers learn the record went away.
        """
        subscribers = list(self._subscriptions.get(collection, {}).values())
        for subscription in subscribers:
            if subscription.matches(value if value is not None else previous):
                await deliver(subscription.callback, key, value)

    def clear(self) -> None:
        for subs in self._subscriptions.values():
            for subscription in subs.values():
                subscription.active = False
        self._subscriptions.clear()


@runtime_checkable
class PersistenceGateway(Protocol):
    """
    Uniform key/value document store used by every chat service.

    Records are JSON-compatible dictionaries addressed by ``(collection, key)``.
    Every method is a coroutine and may raise ``GatewayError``.
    There is no conflict resolution: the last write observed wins.
    """

    name: str

    async def get(self, collection: str, key: str) -> Optional[Record]:
        """Return the record stored under key, or None when absent."""
        ...

    async def put(self, collection: str, key: str, value: Record) -> WriteResult:
        """Replace the record stored under key and notify subscribers."""
        ...

    async def delete(self, collection: str, key: str) -> bool:
        """Remove a record. Returns False when nothing was stored."""
        ...

    async def query(self, collection: str, predicate: Predicate = match_all) -> List[Record]:
        """Return every record of a collection accepted by predicate, in insertion order."""
        ...

    async def subscribe(self, collection: str, predicate: Predicate,
                        on_change: ChangeCallback) -> Union[Subscription, CompositeSubscription]:
        """Register on_change(key, value) for changes to matching records."""
        ...

    async def close(self) -> None:
        ...
