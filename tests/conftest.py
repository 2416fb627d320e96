"""
Shared fixtures.

Tests run against fakeredis; every FakeAsyncRedis created from the same
FakeServer sees the same keys and channels, which stands in for several
agent processes sharing one Redis.
"""

import asyncio
import uuid

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis, FakeServer

from backplane.backplane import Backplane
from backplane.config import BackplaneConfig
from backplane.context import ContextManager
from backplane.messaging import MessageBroker
from backplane.registry import DiscoveryService


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def config():
    """Config with a unique prefix and fast heartbeats; sweeping is left slow."""
    return BackplaneConfig(
        prefix=f"test-{uuid.uuid4().hex[:8]}:",
        heartbeat_interval=0.05,
        sweep_interval=60,
        stale_after=120,
    )


@pytest_asyncio.fixture
async def make_client(server):
    """Factory for clients connected to the shared fake server."""
    clients = []

    def factory():
        client = FakeAsyncRedis(server=server, decode_responses=True)
        clients.append(client)
        return client

    yield factory

    for client in clients:
        await client.aclose()


@pytest.fixture
def client(make_client):
    return make_client()


@pytest_asyncio.fixture
async def discovery(client, config):
    service = DiscoveryService(client, config)
    await service.initialize()
    yield service
    await service.cleanup()


@pytest_asyncio.fixture
async def broker(client, config):
    service = MessageBroker(client, config)
    await service.initialize()
    yield service
    await service.close()


@pytest_asyncio.fixture
async def context_manager(client, config):
    service = ContextManager(client, config)
    await service.initialize()
    yield service
    await service.close()


@pytest_asyncio.fixture
async def backplane(client, config):
    bp = Backplane(config, client=client)
    await bp.connect()
    yield bp
    await bp.cleanup()


@pytest.fixture
def eventually():
    """Poll an async or sync predicate until it holds or the timeout expires."""

    async def wait(predicate, timeout=2.0, interval=0.01):
        deadline = asyncio.get_running_loop().time() + timeout
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return result
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)

    return wait
