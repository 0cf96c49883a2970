"""
Pytest configuration file
Sets up an in-memory test environment for every test
"""

import os

import pytest

# Must be set before modernchat.config is imported
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "secret"
os.environ["AUTO_REPLY_ENABLED"] = "false"

from chat_gateway import GatewayError, InMemoryGateway  # noqa: E402
from modernchat.services import ChatServices  # noqa: E402


class FlakyGateway:
    """Delegates to an in-memory store, or fails every call while down."""

    name = "flaky"

    def __init__(self, inner=None):
        self.inner = inner or InMemoryGateway()
        self.down = False
        self.calls = 0

    def _check(self):
        self.calls += 1
        if self.down:
            raise GatewayError("store is down", self.name)

    async def get(self, collection, key):
        self._check()
        return await self.inner.get(collection, key)

    async def put(self, collection, key, value):
        self._check()
        return await self.inner.put(collection, key, value)

    async def delete(self, collection, key):
        self._check()
        return await self.inner.delete(collection, key)

    async def query(self, collection, predicate=lambda r: True):
        self._check()
        return await self.inner.query(collection, predicate)

    async def subscribe(self, collection, predicate, on_change):
        self._check()
        return await self.inner.subscribe(collection, predicate, on_change)

    async def close(self):
        await self.inner.close()


@pytest.fixture
def gateway():
    return InMemoryGateway()


@pytest.fixture
def flaky_gateway():
    return FlakyGateway()


@pytest.fixture
def services(gateway):
    return ChatServices(gateway, admin_username="admin", admin_password="secret", typing_timeout=0.05)


@pytest.fixture
def flaky_services(flaky_gateway):
    return ChatServices(flaky_gateway, admin_username="admin", admin_password="secret", typing_timeout=0.05)


@pytest.fixture
def make_user():
    """Store an approved user directly, skipping the registration workflow."""
    async def _make(chat_services, username):
        user = chat_services.users.new_user(username, is_approved=True)
        assert await chat_services.users.save_user(user)
        return user
    return _make
