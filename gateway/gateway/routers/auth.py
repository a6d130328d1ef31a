"""OAuth install endpoints: ``GET /auth`` and ``GET /auth/callback``."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from gateway.dependencies import OAuthServiceDep, SettingsDep
from gateway.errors import GatewayError
from gateway.services.oauth_service import SHOP_COOKIE, STATE_COOKIE

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _oauth_error(exc: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "message": exc.message})


@router.get("")
async def begin_install(
    service: OAuthServiceDep,
    settings: SettingsDep,
    shop: str | None = Query(default=None),
) -> Response:
    """Set the anti-CSRF cookie pair and redirect to the platform's consent screen."""
    try:
        start = service.begin(shop)
    except GatewayError as exc:
        return _oauth_error(exc)

    response = RedirectResponse(start.authorize_url, status_code=302)
    secure = settings.app_url.startswith("https://")
    for key, value in ((STATE_COOKIE, start.state), (SHOP_COOKIE, start.tenant_domain)):
        response.set_cookie(
            key=key,
            value=value,
            max_age=settings.oauth_cookie_max_age,
            httponly=True,
            secure=secure,
            samesite="lax",
            path="/",
        )
    return response


@router.get("/callback")
async def oauth_callback(request: Request, service: OAuthServiceDep) -> Response:
    """Complete the install: state check, HMAC check, token exchange, persistence.

    Returns a 302 into the app only when the session is durably stored;
    any failure renders ``{"error": <code>, "message": ...}`` with 400/500.
    """
    try:
        result = await service.complete(request.query_params, request.cookies)
    except GatewayError as exc:
        return _oauth_error(exc)

    response = RedirectResponse(result.redirect_url, status_code=302)
    response.delete_cookie(STATE_COOKIE, path="/")
    response.delete_cookie(SHOP_COOKIE, path="/")
    return response
