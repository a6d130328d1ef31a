"""Function-call bridge invoked by the voice provider during a live call.

Every logical failure (unknown tenant, missing credential, store outage,
unknown function, upstream error) becomes ``{"results": [{"error": ...}]}``; the
provider always gets an envelope back, never a transport-level error.
"""

from __future__ import annotations

import html
import json
import logging
import re
import secrets
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from gateway.services.platform_client import PlatformClient, PlatformError
from gateway_core.domains import DEFAULT_DOMAIN_SUFFIX
from gateway_core.state.database import StoreClient
from gateway_core.state.repository import SessionRepository, TenantRepository

logger = logging.getLogger(__name__)

# Accepted caller-secret headers; the first one present is the one compared.
SECRET_HEADERS: tuple[str, ...] = ("x-caller-secret", "x-vapi-secret", "x-api-key", "authorization")

DESCRIPTION_LIMIT = 200
DEFAULT_LIMIT = 5
MAX_LIMIT = 50

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


def _strip_html(raw: str | None) -> str:
    if not raw:
        return ""
    text = html.unescape(_TAG_RE.sub(" ", raw))
    return _WS_RE.sub(" ", text).strip()


def format_product(product: dict[str, Any]) -> dict[str, Any]:
    """Reduce a platform product to the fields the assistant reads aloud."""
    variants = product.get("variants") or []
    first = variants[0] if variants and isinstance(variants[0], dict) else {}
    inventory = first.get("inventory_quantity")
    return {
        "title": product.get("title", ""),
        "description": _strip_html(product.get("body_html"))[:DESCRIPTION_LIMIT],
        "price": first.get("price"),
        "available": inventory is None or inventory > 0,
        "productType": product.get("product_type") or None,
        "vendor": product.get("vendor") or None,
    }


def _coerce_limit(raw: Any) -> int:
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_LIMIT
    return max(1, min(limit, MAX_LIMIT))


BridgeFunction = Callable[["FunctionBridge", str, str, dict[str, Any]], Awaitable[dict[str, Any]]]


async def _get_products(bridge: FunctionBridge, domain: str, token: str, params: dict[str, Any]) -> dict[str, Any]:
    products = await bridge.platform.list_products(domain, token, limit=_coerce_limit(params.get("limit")))
    return {"products": [format_product(p) for p in products], "count": len(products)}


async def _search_products(bridge: FunctionBridge, domain: str, token: str, params: dict[str, Any]) -> dict[str, Any]:
    query = str(params.get("query") or "").strip()
    if not query:
        return {"error": "A search query is required"}
    products = await bridge.platform.list_products(domain, token, limit=DEFAULT_LIMIT, title=query)
    return {"query": query, "products": [format_product(p) for p in products], "count": len(products)}


FUNCTIONS: Mapping[str, BridgeFunction] = {
    "get_products": _get_products,
    "search_products": _search_products,
}


def parse_function_call(body: Any) -> tuple[str | None, dict[str, Any]]:
    """Extract ``(name, parameters)`` from the provider's request body.

    Accepts ``{"message": {"functionCall": {...}}}`` as well as a top-level
    ``functionCall``.  String parameters are decoded as JSON.
    """
    if not isinstance(body, dict):
        return None, {}
    message = body.get("message") if isinstance(body.get("message"), dict) else body
    call = message.get("functionCall") or body.get("functionCall")
    if not isinstance(call, dict):
        return None, {}
    params = call.get("parameters") or {}
    if isinstance(params, str):
        try:
            params = json.loads(params)
        except json.JSONDecodeError:
            params = {}
    name = call.get("name")
    return (name if isinstance(name, str) else None), (params if isinstance(params, dict) else {})


class FunctionBridge:
    """Authenticates provider callbacks and runs catalog functions for a tenant."""

    def __init__(
        self,
        secret: str,
        platform: PlatformClient,
        store: StoreClient,
        *,
        domain_suffix: str = DEFAULT_DOMAIN_SUFFIX,
    ) -> None:
        self._secret = secret
        self.platform = platform
        self._store = store
        self._suffix = domain_suffix

    @property
    def function_names(self) -> list[str]:
        return sorted(FUNCTIONS)

    def authenticate(self, headers: Mapping[str, str]) -> bool:
        """Compare the first present caller-secret header against the shared secret."""
        if not self._secret:
            return False
        lowered = {k.lower(): v for k, v in headers.items()}
        for name in SECRET_HEADERS:
            value = lowered.get(name)
            if not value:
                continue
            if name == "authorization":
                scheme, _, token = value.partition(" ")
                value = token if scheme.lower() == "bearer" else ""
            return secrets.compare_digest(value.encode("utf-8"), self._secret.encode("utf-8"))
        return False

    async def invoke(self, tenant_id: str, name: str | None, params: dict[str, Any]) -> dict[str, Any]:
        """Run *name* for *tenant_id*; always returns ``{"results": [...]}``."""
        if not name:
            return {"results": [{"error": "Missing function name"}]}
        fn = FUNCTIONS.get(name)
        if fn is None:
            logger.info("Unknown bridge function %r for tenant %s", name, tenant_id)
            return {"results": [{"name": name, "error": f"Unknown function: {name}"}]}

        try:
            credential = await self._resolve_credential(tenant_id)
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Credential lookup for bridge call %s on tenant %s failed: %s", name, tenant_id, exc)
            return {"results": [{"name": name, "error": "Store temporarily unavailable. Please try again shortly."}]}
        if credential is None:
            return {"results": [{"name": name, "error": "Store credential not found. Please reinstall the app."}]}
        domain, token = credential

        try:
            result = await fn(self, domain, token, params)
        except PlatformError as exc:
            logger.warning("Bridge function %s failed for tenant %s: %s", name, tenant_id, exc)
            return {"results": [{"name": name, "error": f"Catalog request failed: {exc}"}]}
        if "error" in result:
            return {"results": [{"name": name, "error": result["error"]}]}
        return {"results": [{"name": name, "result": result}]}

    async def _resolve_credential(self, tenant_id: str) -> tuple[str, str] | None:
        """Return ``(domain, token)``, preferring the offline grant over the legacy field."""
        async with self._store.scope() as session:
            tenant = await TenantRepository(session, self._suffix).get_by_id(tenant_id)
            if tenant is None:
                logger.info("Bridge call for unknown tenant %s", tenant_id)
                return None
            grant = await SessionRepository(session, self._suffix).get(tenant.tenant_domain)
            token = grant.access_token if grant is not None else tenant.access_token
            if not token:
                logger.warning("No stored credential for tenant %s", tenant_id)
                return None
            return tenant.tenant_domain, token
