"""Verified webhook ingestion and topic dispatch.

The dispatcher never raises to the transport: every outcome, including a
missing or invalid signature, is reported as a :class:`WebhookResult` that
the router renders with HTTP 200 so the platform does not enter a retry
storm.  Rejections are logged as security events instead.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from gateway.security import verify_signature
from gateway.services import webhook_handlers
from gateway_core.domains import DEFAULT_DOMAIN_SUFFIX, normalize_tenant_domain
from gateway_core.state.database import StoreClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookEvent:
    """One verified platform notification."""

    topic: str
    tenant_domain: str
    payload: dict[str, Any]
    verified: bool = True
    event_id: str | None = None
    domain_suffix: str = DEFAULT_DOMAIN_SUFFIX


WebhookHandler = Callable[[WebhookEvent, AsyncSession], Awaitable[None]]

DEFAULT_HANDLERS: Mapping[str, WebhookHandler] = {
    "app/uninstalled": webhook_handlers.handle_app_uninstalled,
    "shop/update": webhook_handlers.handle_shop_update,
    "products/create": webhook_handlers.handle_product_upsert,
    "products/update": webhook_handlers.handle_product_upsert,
    "products/delete": webhook_handlers.handle_product_delete,
    "orders/create": webhook_handlers.handle_order_created,
}

# Payload fields that identify the originating shop, in lookup order.
_SHOP_FIELDS: tuple[str, ...] = ("shop_domain", "myshopify_domain", "domain")
_EVENT_ID_HEADERS: tuple[str, ...] = ("x-webhook-id", "x-event-id")


@dataclass
class WebhookResult:
    success: bool
    event_type: str | None = None
    processed: bool = False
    error_code: str | None = None
    message: str | None = None

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": self.success,
            "eventType": self.event_type,
            "processed": self.processed,
        }
        if self.error_code is not None:
            body["error"] = {"code": self.error_code, "message": self.message}
        return body


def _extract_tenant_domain(payload: dict[str, Any]) -> str | None:
    for key in _SHOP_FIELDS:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    shop = payload.get("shop")
    if isinstance(shop, dict) and isinstance(shop.get("myshopify_domain"), str):
        return shop["myshopify_domain"]
    return None


class WebhookDispatcher:
    """Verifies, classifies and routes one inbound webhook.

    Parameters
    ----------
    secret:
        Shared secret used to verify the body signature.
    handlers:
        Map from topic string to handler.  Unknown topics are acknowledged
        as "unregistered" without error.
    store:
        Store client; each handler runs in its own transaction.
    """

    def __init__(
        self,
        secret: str,
        handlers: Mapping[str, WebhookHandler],
        store: StoreClient,
        *,
        signature_header: str = "X-Signature",
        topic_header: str = "X-Topic",
        domain_suffix: str = DEFAULT_DOMAIN_SUFFIX,
    ) -> None:
        self._secret = secret
        self._handlers = dict(handlers)
        self._store = store
        self._signature_header = signature_header.lower()
        self._topic_header = topic_header.lower()
        self._suffix = domain_suffix

    async def handle(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookResult:
        """Process one delivery.  *raw_body* must be the unparsed request bytes."""
        lowered = {k.lower(): v for k, v in headers.items()}
        topic = lowered.get(self._topic_header) or None
        event_id = next((lowered[h] for h in _EVENT_ID_HEADERS if lowered.get(h)), None)

        signature = lowered.get(self._signature_header, "")
        if not signature:
            logger.warning(
                "SECURITY: webhook rejected, missing signature header (topic=%s, event_id=%s)",
                topic,
                event_id,
            )
            return WebhookResult(False, topic, error_code="MISSING_HMAC", message="Missing signature header")

        if not verify_signature(self._secret, raw_body, signature):
            logger.warning(
                "SECURITY: webhook signature verification failed (topic=%s, event_id=%s, body_bytes=%d)",
                topic,
                event_id,
                len(raw_body),
            )
            return WebhookResult(False, topic, error_code="INVALID_HMAC", message="Signature verification failed")

        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("Webhook body is not valid JSON (topic=%s, event_id=%s)", topic, event_id)
            return WebhookResult(False, topic, error_code="INVALID_PAYLOAD", message="Body is not valid JSON")
        if not isinstance(payload, dict):
            return WebhookResult(False, topic, error_code="INVALID_PAYLOAD", message="Body must be a JSON object")

        if not topic:
            logger.warning("Webhook missing topic header (event_id=%s)", event_id)
            return WebhookResult(False, None, error_code="MISSING_TOPIC", message="Missing topic header")

        tenant_domain = normalize_tenant_domain(_extract_tenant_domain(payload), self._suffix)
        if not tenant_domain:
            logger.warning("Webhook missing shop identifier (topic=%s, event_id=%s)", topic, event_id)
            return WebhookResult(False, topic, error_code="MISSING_SHOP", message="Missing shop identifier")

        handler = self._handlers.get(topic)
        if handler is None:
            logger.info("Unregistered webhook topic %s for %s; acknowledged", topic, tenant_domain)
            return WebhookResult(True, topic, processed=False)

        event = WebhookEvent(
            topic=topic,
            tenant_domain=tenant_domain,
            payload=payload,
            event_id=event_id,
            domain_suffix=self._suffix,
        )
        try:
            async with self._store.scope() as session:
                await handler(event, session)
        except Exception:
            logger.exception(
                "Webhook handler failed (topic=%s, tenant=%s, event_id=%s)",
                topic,
                tenant_domain,
                event_id,
            )
            return WebhookResult(False, topic, error_code="HANDLER_ERROR", message="Handler failed")

        logger.info("Webhook %s processed for %s", topic, tenant_domain)
        return WebhookResult(True, topic, processed=True)
