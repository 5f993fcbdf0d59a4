"""
Shared test configuration and fixtures for the portal tests.

Provides settings, a fake Redis client, a mocked aiohttp session and an application
test client wired with in-memory collaborators.
"""

from unittest.mock import AsyncMock

from aiohttp import ClientSession
from aiohttp.test_utils import TestClient, TestServer
from cryptography.fernet import Fernet
import fakeredis.aioredis
import pytest
import pytest_asyncio

from earth.ma.portal.app.config import (
    EmailSenderAppKey,
    RateLimiterAppKey,
    RedisClientAppKey,
    SessionAppKey,
    SessionStoreAppKey,
    Settings,
    TwoFactorStoreAppKey,
)
from earth.ma.portal.app.server import create_app
from earth.ma.portal.twofa.email import LoggingEmailSender
from earth.ma.portal.twofa.store import TwoFactorStore


@pytest.fixture
def settings() -> Settings:
    return Settings(
        public_url="https://portal.example",
        pds_url="https://pds.example",
        auth_endpoint="https://auth.pds.example/oauth/authorize",
        plc_directory_url="https://plc.example",
        handle_resolver_url="https://resolver.example",
        session_secret="s" * 48,
        csrf_secret="c" * 48,
        encryption_key=Fernet(Fernet.generate_key()),
        wallet_service_url="https://wallet.example",
        wallet_api_key="wallet-key",
    )  # type: ignore


@pytest.fixture
def mock_session():
    """Mocked aiohttp session. Chain requests go through the awaited ``request``."""
    session = AsyncMock(spec=ClientSession)
    session.request = AsyncMock()
    return session


@pytest_asyncio.fixture
async def fake_redis_client():
    """Provide fake Redis client for unit tests."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def twofa_store(fake_redis_client, settings) -> TwoFactorStore:
    return TwoFactorStore(fake_redis_client, settings.encryption_key)


@pytest.fixture
def app(settings, mock_session, fake_redis_client, twofa_store):
    app = create_app(settings)
    app[SessionAppKey] = mock_session
    app[RedisClientAppKey] = fake_redis_client
    app[TwoFactorStoreAppKey] = twofa_store
    app[EmailSenderAppKey] = LoggingEmailSender()
    return app


@pytest_asyncio.fixture
async def client(app):
    async with TestClient(TestServer(app)) as client:
        yield client
    await app[SessionStoreAppKey].stop()
    await app[RateLimiterAppKey].stop()
