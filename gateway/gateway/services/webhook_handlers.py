"""Topic handlers for verified platform webhooks.

Each handler receives the verified event and a session whose transaction
the dispatcher owns.  Handlers raise on failure; the dispatcher logs and
still acknowledges the delivery.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession

from gateway_core.state.repository import CatalogRepository, SessionRepository, TenantRepository
from gateway_core.state.tables import SubscriptionStatus

if TYPE_CHECKING:
    from gateway.services.webhook_service import WebhookEvent

logger = logging.getLogger(__name__)


def _price_to_cents(raw: Any) -> int | None:
    if raw in (None, ""):
        return None
    try:
        return int((Decimal(str(raw)) * 100).quantize(Decimal("1")))
    except (InvalidOperation, ValueError):
        return None


async def handle_app_uninstalled(event: WebhookEvent, session: AsyncSession) -> None:
    """Mark the tenant cancelled and drop its stored grants."""
    tenants = TenantRepository(session, event.domain_suffix)
    updated = await tenants.set_subscription_status(event.tenant_domain, SubscriptionStatus.CANCELLED)
    removed = await SessionRepository(session, event.domain_suffix).delete_for_domain(event.tenant_domain)
    logger.info(
        "App uninstalled for %s (tenant_updated=%s, sessions_removed=%d)",
        event.tenant_domain,
        updated,
        removed,
    )


async def handle_shop_update(event: WebhookEvent, session: AsyncSession) -> None:
    tenants = TenantRepository(session, event.domain_suffix)
    if await tenants.get_by_domain(event.tenant_domain) is None:
        logger.info("shop/update for unknown tenant %s ignored", event.tenant_domain)
        return
    fields: dict[str, Any] = {}
    if event.payload.get("name"):
        fields["display_name"] = str(event.payload["name"])
    if event.payload.get("email"):
        fields["email"] = str(event.payload["email"])
    if fields:
        await tenants.upsert(event.tenant_domain, **fields)


async def handle_product_upsert(event: WebhookEvent, session: AsyncSession) -> None:
    """Mirror a created or updated product into ``catalog_items``."""
    tenant = await TenantRepository(session, event.domain_suffix).get_by_domain(event.tenant_domain)
    if tenant is None:
        logger.info("%s for unknown tenant %s ignored", event.topic, event.tenant_domain)
        return
    payload = event.payload
    product_id = payload.get("id")
    if product_id is None or not payload.get("title"):
        raise ValueError(f"{event.topic} payload is missing id or title")

    variants = payload.get("variants") or []
    first = variants[0] if variants and isinstance(variants[0], dict) else {}
    await CatalogRepository(session, tenant.id).upsert(
        external_id=str(product_id),
        title=str(payload["title"]),
        description=payload.get("body_html"),
        price_cents=_price_to_cents(first.get("price")),
        currency=str(payload.get("currency") or "USD"),
        inventory_quantity=first.get("inventory_quantity"),
    )


async def handle_product_delete(event: WebhookEvent, session: AsyncSession) -> None:
    tenant = await TenantRepository(session, event.domain_suffix).get_by_domain(event.tenant_domain)
    if tenant is None or event.payload.get("id") is None:
        return
    await CatalogRepository(session, tenant.id).delete(str(event.payload["id"]))


async def handle_order_created(event: WebhookEvent, session: AsyncSession) -> None:
    # Orders are not mirrored; the acknowledgement is the whole contract.
    logger.info(
        "Order %s created for %s",
        event.payload.get("id") or event.payload.get("name"),
        event.tenant_domain,
    )
