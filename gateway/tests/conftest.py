"""Shared fixtures for gateway tests.

Provides a file-backed SQLite store (so read-back happens through a
separate connection), settings, mock-transport HTTP clients and an
``AsyncClient`` wired to the app through dependency overrides.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from gateway.config import GatewaySettings
from gateway.dependencies import get_platform_client, get_provider_client, get_settings, get_store_clients
from gateway.main import create_app
from gateway.services.platform_client import PlatformClient
from gateway.services.provider_client import ProviderClient
from gateway_core.state.database import StoreClient
from gateway_core.state.repository import TenantRepository
from gateway_core.state.tables import Base

PLATFORM_SECRET = "test-platform-secret"
WEBHOOK_SECRET = "test-webhook-secret"
FUNCTION_SECRET = "test-function-secret"
TENANT_DOMAIN = "demo.myshopify.com"

Handler = Callable[[httpx.Request], httpx.Response]


def _unexpected(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"Unexpected outbound request: {request.method} {request.url}")


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path) -> GatewaySettings:
    """Return a settings object suitable for testing."""
    return GatewaySettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'state.db'}",
        app_url="https://gateway.test",
        platform_api_key="test-client-id",
        platform_api_secret=PLATFORM_SECRET,
        webhook_secret=WEBHOOK_SECRET,
        provider_api_key="test-provider-key",
        function_secret=FUNCTION_SECRET,
        assistant_backoff_seconds=0.0,
        phone_backoff_seconds=0.0,
        platform_env="dev",
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def store(tmp_path):
    """A primary store client backed by a temporary SQLite file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'state.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield StoreClient("primary", async_sessionmaker(engine, expire_on_commit=False))
    await engine.dispose()


@pytest_asyncio.fixture
async def tenant(store: StoreClient):
    """An installed tenant with a legacy access token."""
    async with store.scope() as session:
        row = await TenantRepository(session).upsert(
            TENANT_DOMAIN,
            display_name="Demo Store",
            access_token="legacy-token",
        )
    return row


# ---------------------------------------------------------------------------
# Outbound HTTP clients
# ---------------------------------------------------------------------------


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served."""

    def __init__(self, handler: Handler) -> None:
        self.requests: list[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)

    def count(self, method: str, path_prefix: str) -> int:
        return sum(1 for r in self.requests if r.method == method and r.url.path.startswith(path_prefix))

    def json_bodies(self, method: str, path_prefix: str) -> list[dict[str, Any]]:
        return [
            json.loads(r.content)
            for r in self.requests
            if r.method == method and r.url.path.startswith(path_prefix)
        ]


@pytest.fixture()
def make_platform() -> Callable[[Handler], tuple[PlatformClient, RecordingTransport]]:
    def _make(handler: Handler = _unexpected) -> tuple[PlatformClient, RecordingTransport]:
        transport = RecordingTransport(handler)
        client = PlatformClient("test-client-id", PLATFORM_SECRET, transport=transport)
        return client, transport

    return _make


@pytest.fixture()
def make_provider() -> Callable[[Handler], tuple[ProviderClient, RecordingTransport]]:
    def _make(handler: Handler = _unexpected) -> tuple[ProviderClient, RecordingTransport]:
        transport = RecordingTransport(handler)
        client = ProviderClient("https://provider.test", "test-provider-key", transport=transport)
        return client, transport

    return _make


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_app(test_settings: GatewaySettings, store: StoreClient):
    """Build an app whose process-scoped dependencies are test doubles."""

    def _make(
        *,
        platform: PlatformClient | None = None,
        provider: ProviderClient | None = None,
        stores: list[StoreClient] | None = None,
    ):
        app = create_app()
        app.dependency_overrides[get_settings] = lambda: test_settings
        app.dependency_overrides[get_store_clients] = lambda: stores or [store]
        app.dependency_overrides[get_platform_client] = lambda: platform or PlatformClient(
            "test-client-id", PLATFORM_SECRET, transport=httpx.MockTransport(_unexpected)
        )
        app.dependency_overrides[get_provider_client] = lambda: provider or ProviderClient(
            "https://provider.test", "k", transport=httpx.MockTransport(_unexpected)
        )
        return app

    return _make


@pytest.fixture()
def make_client() -> Callable[[Any], AsyncClient]:
    def _make(app) -> AsyncClient:
        return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")

    return _make
