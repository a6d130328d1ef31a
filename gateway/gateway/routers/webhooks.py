"""Webhook endpoints: signed platform event ingestion and liveness probe."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request, Response

from gateway.dependencies import WebhookDispatcherDep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("")
async def receive_webhook(request: Request, dispatcher: WebhookDispatcherDep) -> dict[str, Any]:
    """Receive one platform webhook.

    The raw body is read exactly once and the signature is verified over
    those bytes before any JSON parsing.  The response is always HTTP 200;
    failures are reported in the body and logged.
    """
    body = await request.body()
    result = await dispatcher.handle(body, request.headers)
    return result.to_body()


@router.head("")
async def webhook_probe() -> Response:
    """Liveness probe used by the platform before enabling delivery."""
    return Response(status_code=200)
