"""HTTP client for the commerce platform: OAuth token exchange and catalog reads."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

import httpx

logger = logging.getLogger(__name__)


class PlatformError(Exception):
    """A platform call failed (transport error, non-2xx, or malformed body)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class TokenGrant:
    """Result of a successful authorization-code exchange."""

    access_token: str
    scope: list[str] = field(default_factory=list)
    expires_in: int | None = None
    associated_user: dict[str, Any] | None = None


class PlatformClient:
    """Thin async wrapper around the platform's OAuth and Admin REST APIs.

    Unlike the catalog helpers, :meth:`exchange_code` is never retried:
    authorization codes are single-use.

    Parameters
    ----------
    api_key:
        OAuth client id.
    api_secret:
        OAuth client secret.
    api_version:
        Admin API version segment (e.g. ``2024-10``).
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional httpx transport (tests inject ``httpx.MockTransport``).
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        *,
        api_version: str = "2024-10",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._api_secret = api_secret
        self._api_version = api_version
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={"Accept": "application/json"},
            transport=transport,
        )

    # -- OAuth ---------------------------------------------------------------

    def authorize_url(self, tenant_domain: str, *, scopes: list[str], redirect_uri: str, state: str) -> str:
        """Return the platform URL that starts the authorization-code grant."""
        query = urlencode(
            {
                "client_id": self._api_key,
                "scope": ",".join(scopes),
                "redirect_uri": redirect_uri,
                "state": state,
            }
        )
        return f"https://{tenant_domain}/admin/oauth/authorize?{query}"

    async def exchange_code(self, tenant_domain: str, code: str) -> TokenGrant:
        """Trade a single-use authorization *code* for an offline access token.

        Raises
        ------
        PlatformError
            On timeout, transport failure, non-2xx status, or a response
            without ``access_token``.
        """
        url = f"https://{tenant_domain}/admin/oauth/access_token"
        payload = {"client_id": self._api_key, "client_secret": self._api_secret, "code": code}
        try:
            response = await self._client.post(url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Token exchange for %s returned %d",
                tenant_domain,
                exc.response.status_code,
            )
            raise PlatformError(
                f"Token exchange returned HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            logger.warning("Token exchange for %s failed: %s", tenant_domain, exc)
            raise PlatformError(f"Token exchange request failed: {exc}") from exc
        except ValueError as exc:
            raise PlatformError("Token exchange returned a non-JSON body") from exc

        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            raise PlatformError("Token exchange response did not include an access_token")

        raw_scope = body.get("scope") or ""
        return TokenGrant(
            access_token=access_token,
            scope=[s.strip() for s in raw_scope.split(",") if s.strip()],
            expires_in=body.get("expires_in"),
            associated_user=body.get("associated_user"),
        )

    # -- Catalog -------------------------------------------------------------

    async def list_products(
        self,
        tenant_domain: str,
        access_token: str,
        *,
        limit: int = 5,
        title: str | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch catalog products, optionally filtered by *title*.

        Raises
        ------
        PlatformError
            On timeout, transport failure or a non-2xx status.
        """
        params: dict[str, Any] = {"limit": limit}
        if title:
            params["title"] = title
        body = await self._get(tenant_domain, access_token, "products.json", params)
        products = body.get("products", [])
        return products if isinstance(products, list) else []

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    # -- Internal helpers ----------------------------------------------------

    async def _get(
        self,
        tenant_domain: str,
        access_token: str,
        resource: str,
        params: dict[str, Any],
    ) -> dict[str, Any]:
        url = f"https://{tenant_domain}/admin/api/{self._api_version}/{resource}"
        try:
            response = await self._client.get(
                url,
                params=params,
                headers={"X-Shopify-Access-Token": access_token},
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Platform returned %d for %s on %s",
                exc.response.status_code,
                resource,
                tenant_domain,
            )
            raise PlatformError(
                f"Platform API error: {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            logger.warning("Platform request for %s on %s failed: %s", resource, tenant_domain, exc)
            raise PlatformError(f"Platform request failed: {exc}") from exc
        except ValueError as exc:
            raise PlatformError("Platform returned a non-JSON body") from exc
        return body if isinstance(body, dict) else {}
