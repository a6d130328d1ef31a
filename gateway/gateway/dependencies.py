"""FastAPI dependency injection for settings, store clients, HTTP clients and services."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from gateway.config import GatewaySettings, load_gateway_settings
from gateway.errors import AuthenticationError
from gateway.services.function_bridge import FunctionBridge
from gateway.services.oauth_service import OAuthService
from gateway.services.platform_client import PlatformClient
from gateway.services.provider_client import ProviderClient
from gateway.services.provisioning_service import ProvisioningService
from gateway.services.webhook_service import DEFAULT_HANDLERS, WebhookDispatcher
from gateway_core.domains import normalize_tenant_domain
from gateway_core.state.database import StoreClient, get_engine, session_scope

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: GatewaySettings | None = None


def get_settings() -> GatewaySettings:
    """Return the cached :class:`GatewaySettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_gateway_settings()
    return _settings_cache


SettingsDep = Annotated[GatewaySettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Store clients
# ---------------------------------------------------------------------------

_engines: list[AsyncEngine] = []
_store_clients: list[StoreClient] = []


def init_store_clients(settings: GatewaySettings) -> list[StoreClient]:
    """Create the ordered store client list: primary, then the optional fallback."""
    global _engines, _store_clients  # noqa: PLW0603
    urls = [("primary", settings.database_url)]
    if settings.fallback_database_url:
        urls.append(("fallback", settings.fallback_database_url))

    _engines = []
    _store_clients = []
    for name, url in urls:
        engine = get_engine(url)
        _engines.append(engine)
        _store_clients.append(StoreClient(name, async_sessionmaker(engine, expire_on_commit=False)))
    return list(_store_clients)


async def dispose_store_clients() -> None:
    """Dispose every engine pool (call during shutdown)."""
    global _engines, _store_clients  # noqa: PLW0603
    for engine in _engines:
        await engine.dispose()
    _engines = []
    _store_clients = []


def get_primary_engine() -> AsyncEngine:
    if not _engines:
        raise RuntimeError(
            "Store clients have not been initialised. Ensure init_store_clients() is called during application startup."
        )
    return _engines[0]


def get_store_clients() -> list[StoreClient]:
    """Return the ordered store client list (primary first)."""
    if not _store_clients:
        raise RuntimeError(
            "Store clients have not been initialised. Ensure init_store_clients() is called during application startup."
        )
    return list(_store_clients)


StoreClientsDep = Annotated[list[StoreClient], Depends(get_store_clients)]


async def get_db_session(stores: StoreClientsDep) -> AsyncGenerator[AsyncSession, None]:
    """Yield a primary-store ``AsyncSession``; commits on clean exit, rolls back on exception."""
    async with session_scope(stores[0].session_factory) as session:
        yield session


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Outbound HTTP clients
# ---------------------------------------------------------------------------

_platform_client: PlatformClient | None = None
_provider_client: ProviderClient | None = None


def init_platform_client(settings: GatewaySettings) -> PlatformClient:
    """Create and cache the global :class:`PlatformClient`."""
    global _platform_client  # noqa: PLW0603
    _platform_client = PlatformClient(
        api_key=settings.platform_api_key,
        api_secret=settings.platform_api_secret.get_secret_value(),
        api_version=settings.platform_api_version,
        timeout=settings.platform_timeout,
    )
    return _platform_client


def init_provider_client(settings: GatewaySettings) -> ProviderClient:
    """Create and cache the global :class:`ProviderClient`."""
    global _provider_client  # noqa: PLW0603
    _provider_client = ProviderClient(
        base_url=settings.provider_api_url,
        api_key=settings.provider_api_key.get_secret_value(),
        timeout=settings.provider_timeout,
    )
    return _provider_client


async def dispose_http_clients() -> None:
    """Close both outbound HTTP pools."""
    global _platform_client, _provider_client  # noqa: PLW0603
    if _platform_client is not None:
        await _platform_client.close()
        _platform_client = None
    if _provider_client is not None:
        await _provider_client.close()
        _provider_client = None


def get_platform_client() -> PlatformClient:
    """Return the cached :class:`PlatformClient` singleton."""
    if _platform_client is None:
        raise RuntimeError(
            "Platform client has not been initialised. Ensure init_platform_client() is called during application startup."
        )
    return _platform_client


def get_provider_client() -> ProviderClient:
    """Return the cached :class:`ProviderClient` singleton."""
    if _provider_client is None:
        raise RuntimeError(
            "Provider client has not been initialised. Ensure init_provider_client() is called during application startup."
        )
    return _provider_client


PlatformClientDep = Annotated[PlatformClient, Depends(get_platform_client)]
ProviderClientDep = Annotated[ProviderClient, Depends(get_provider_client)]

# ---------------------------------------------------------------------------
# Services (cheap per-request wrappers over the process-scoped clients)
# ---------------------------------------------------------------------------


def get_oauth_service(
    settings: SettingsDep,
    platform: PlatformClientDep,
    stores: StoreClientsDep,
) -> OAuthService:
    return OAuthService(settings, platform, stores)


def get_webhook_dispatcher(settings: SettingsDep, stores: StoreClientsDep) -> WebhookDispatcher:
    return WebhookDispatcher(
        secret=settings.effective_webhook_secret,
        handlers=DEFAULT_HANDLERS,
        store=stores[0],
        signature_header=settings.webhook_signature_header,
        topic_header=settings.webhook_topic_header,
        domain_suffix=settings.tenant_domain_suffix,
    )


def get_provisioning_service(
    settings: SettingsDep,
    provider: ProviderClientDep,
    stores: StoreClientsDep,
) -> ProvisioningService:
    return ProvisioningService.from_settings(settings, provider, stores)


def get_function_bridge(
    settings: SettingsDep,
    platform: PlatformClientDep,
    stores: StoreClientsDep,
) -> FunctionBridge:
    return FunctionBridge(
        secret=settings.effective_function_secret,
        platform=platform,
        store=stores[0],
        domain_suffix=settings.tenant_domain_suffix,
    )


OAuthServiceDep = Annotated[OAuthService, Depends(get_oauth_service)]
WebhookDispatcherDep = Annotated[WebhookDispatcher, Depends(get_webhook_dispatcher)]
ProvisioningServiceDep = Annotated[ProvisioningService, Depends(get_provisioning_service)]
FunctionBridgeDep = Annotated[FunctionBridge, Depends(get_function_bridge)]

# ---------------------------------------------------------------------------
# Tenant identity (injected by the session-validation collaborator)
# ---------------------------------------------------------------------------

TENANT_DOMAIN_HEADER = "X-Tenant-Domain"
SESSION_TOKEN_HEADER = "X-Session-Token"


def get_tenant_domain(request: Request, settings: SettingsDep) -> str:
    """Extract the authenticated tenant domain.

    The upstream session validator either sets ``request.state.tenant_domain``
    or forwards the tenant in ``X-Tenant-Domain`` alongside a non-empty
    ``X-Session-Token``.
    """
    domain = getattr(request.state, "tenant_domain", None)
    if domain is None:
        token = request.headers.get(SESSION_TOKEN_HEADER, "")
        domain = request.headers.get(TENANT_DOMAIN_HEADER, "") if token else ""
    domain = normalize_tenant_domain(domain, settings.tenant_domain_suffix)
    if not domain:
        raise AuthenticationError("Authentication required. Please re-authenticate the app.")
    request.state.tenant_domain = domain
    return domain


TenantDomainDep = Annotated[str, Depends(get_tenant_domain)]
