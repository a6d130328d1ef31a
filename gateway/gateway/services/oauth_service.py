"""OAuth authorization-code flow: initiation and callback state machine.

The callback fails closed.  A redirect into the app is issued only after
the offline session has been written *and read back*, and the tenant
record has been upserted through one of the configured store clients.
Every other outcome raises a :class:`~gateway.errors.GatewayError`.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from urllib.parse import urlencode

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.config import GatewaySettings
from gateway.errors import ExternalServiceError, GatewayError, ValidationError
from gateway.security import canonical_query_message, verify_signature
from gateway.services.platform_client import PlatformClient, PlatformError, TokenGrant
from gateway_core.domains import display_name_from_domain, is_valid_tenant_domain, normalize_tenant_domain
from gateway_core.state.database import AllStoreClientsFailed, StoreClient, write_with_fallback
from gateway_core.state.repository import SessionRepository, TenantRepository
from gateway_core.state.tables import SubscriptionStatus

logger = logging.getLogger(__name__)

STATE_COOKIE = "oauth_state"
SHOP_COOKIE = "oauth_shop"

_REQUIRED_PARAMS: tuple[str, ...] = ("code", "hmac", "shop", "state")


@dataclass(frozen=True)
class AuthorizationStart:
    tenant_domain: str
    state: str
    authorize_url: str


@dataclass(frozen=True)
class CallbackResult:
    tenant_domain: str
    session_id: str
    redirect_url: str
    store_client: str


class OAuthService:
    """Runs both halves of the install handshake for one request.

    Parameters
    ----------
    settings:
        Gateway settings (client credentials, scopes, app URL).
    platform:
        Client used for the code-for-token exchange.
    stores:
        Ordered store clients.  The session write and its read-back always
        use the first (primary) client; the tenant record write falls back
        through the list.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        platform: PlatformClient,
        stores: Sequence[StoreClient],
    ) -> None:
        if not stores:
            raise ValueError("at least one store client is required")
        self._settings = settings
        self._platform = platform
        self._stores = list(stores)
        self._suffix = settings.tenant_domain_suffix

    # -- Initiation ----------------------------------------------------------

    def begin(self, raw_shop: str | None) -> AuthorizationStart:
        """Validate the shop and mint a fresh anti-CSRF state value."""
        domain = normalize_tenant_domain(raw_shop, self._suffix)
        if not is_valid_tenant_domain(domain):
            raise ValidationError("A valid shop domain is required", code="INVALID_SHOP")
        state = secrets.token_urlsafe(32)
        url = self._platform.authorize_url(
            domain,
            scopes=self._settings.platform_scopes,
            redirect_uri=f"{self._settings.app_url.rstrip('/')}/auth/callback",
            state=state,
        )
        logger.info("OAuth initiated for %s", domain)
        return AuthorizationStart(tenant_domain=domain, state=state, authorize_url=url)

    # -- Callback ------------------------------------------------------------

    async def complete(self, params: Mapping[str, str], cookies: Mapping[str, str]) -> CallbackResult:
        """Run the callback state machine; terminal on first failure.

        Parameters
        ----------
        params:
            Decoded query parameters of the callback request.
        cookies:
            Request cookies; must carry the state pair set by :meth:`begin`.

        Raises
        ------
        ValidationError
            Missing parameters, state mismatch, bad signature (400).
        ExternalServiceError
            Token exchange failed (500, not retried).
        GatewayError
            ``SESSION_PERSIST_FAILED`` or ``TENANT_PERSIST_FAILED`` (500).
        """
        self._check_params(params)
        domain = normalize_tenant_domain(params["shop"], self._suffix)
        self._check_state(params, cookies, domain)
        self._check_signature(params, domain)

        grant = await self._exchange(domain, params["code"])
        session_id = await self._persist_session(domain, grant)
        store_name = await self._persist_tenant(domain, grant)

        query = {"shop": domain}
        if params.get("host"):
            query["host"] = params["host"]
        redirect_url = f"{self._settings.app_url.rstrip('/')}/?{urlencode(query)}"
        logger.info("OAuth installation complete for %s", domain)
        return CallbackResult(
            tenant_domain=domain,
            session_id=session_id,
            redirect_url=redirect_url,
            store_client=store_name,
        )

    def _check_params(self, params: Mapping[str, str]) -> None:
        missing = [name for name in _REQUIRED_PARAMS if not params.get(name)]
        if missing:
            raise ValidationError(
                f"Missing required parameters: {', '.join(missing)}",
                code="MISSING_PARAMS",
            )

    def _check_state(self, params: Mapping[str, str], cookies: Mapping[str, str], domain: str) -> None:
        cookie_state = cookies.get(STATE_COOKIE, "")
        cookie_shop = normalize_tenant_domain(cookies.get(SHOP_COOKIE, ""), self._suffix)
        state_ok = bool(cookie_state) and secrets.compare_digest(
            cookie_state.encode("utf-8"), params["state"].encode("utf-8")
        )
        shop_ok = bool(cookie_shop) and cookie_shop == domain
        if not (state_ok and shop_ok):
            logger.warning(
                "SECURITY: OAuth state check failed for %s (state_cookie=%s, shop_cookie=%s)",
                domain,
                "present" if cookie_state else "missing",
                "match" if shop_ok else ("mismatch" if cookie_shop else "missing"),
            )
            raise ValidationError("OAuth state verification failed", code="STATE_MISMATCH")

    def _check_signature(self, params: Mapping[str, str], domain: str) -> None:
        secret = self._settings.platform_api_secret.get_secret_value()
        message = canonical_query_message(params)
        if not verify_signature(secret, message, params.get("hmac")):
            logger.warning("SECURITY: OAuth callback HMAC verification failed for %s", domain)
            raise ValidationError("HMAC verification failed", code="INVALID_HMAC")
        if not is_valid_tenant_domain(domain):
            raise ValidationError("Invalid shop domain", code="INVALID_SHOP")

    async def _exchange(self, domain: str, code: str) -> TokenGrant:
        try:
            return await self._platform.exchange_code(domain, code)
        except PlatformError as exc:
            logger.error("Token exchange failed for %s: %s", domain, exc)
            raise ExternalServiceError(
                "Failed to exchange authorization code",
                service="platform",
                code="TOKEN_EXCHANGE_FAILED",
                status_code=500,
            ) from exc

    async def _persist_session(self, domain: str, grant: TokenGrant) -> str:
        """Write the offline session, then confirm it in a separate transaction."""
        primary = self._stores[0]
        try:
            async with primary.scope() as session:
                session_id = await SessionRepository(session, self._suffix).upsert(
                    tenant_domain=domain,
                    access_token=grant.access_token,
                    scope=grant.scope,
                    is_online=False,
                )
            async with primary.scope() as session:
                stored = await SessionRepository(session, self._suffix).get(domain)
        except (SQLAlchemyError, OSError, ValueError) as exc:
            logger.error("Session persist failed for %s: %s", domain, exc)
            raise GatewayError(
                "Failed to persist session",
                code="SESSION_PERSIST_FAILED",
                status_code=500,
            ) from exc

        if stored is None or stored.id != session_id or stored.access_token != grant.access_token:
            logger.error("Session read-back mismatch for %s (found=%s)", domain, stored is not None)
            raise GatewayError(
                "Session write could not be verified",
                code="SESSION_PERSIST_FAILED",
                status_code=500,
            )
        return session_id

    async def _persist_tenant(self, domain: str, grant: TokenGrant) -> str:
        suffix = self._suffix

        async def _write(session: AsyncSession) -> None:
            repo = TenantRepository(session, suffix)
            existing = await repo.get_by_domain(domain)
            fields: dict[str, object] = {
                "access_token": grant.access_token,
                "installed_at": datetime.now(UTC),
            }
            if existing is None or existing.subscription_status == SubscriptionStatus.CANCELLED.value:
                # Fresh install or reinstall after uninstall starts a new trial.
                fields.update(
                    display_name=display_name_from_domain(domain, suffix),
                    subscription_status=SubscriptionStatus.TRIAL.value,
                    plan_name="starter",
                    call_minutes_used=0,
                    call_minutes_limit=100,
                )
            await repo.upsert(domain, **fields)

        try:
            _, store_name = await write_with_fallback(self._stores, _write)
        except AllStoreClientsFailed as exc:
            logger.error("Tenant record persist failed for %s on every store client: %s", domain, exc)
            raise GatewayError(
                "Failed to save tenant record; installation is incomplete",
                code="TENANT_PERSIST_FAILED",
                status_code=500,
            ) from exc
        return store_name
