"""Function-call bridge endpoints used by the voice provider."""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from gateway.dependencies import FunctionBridgeDep
from gateway.services.function_bridge import parse_function_call

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/functions", tags=["functions"])


@router.post("/{tenant_id}")
async def invoke_function(tenant_id: str, request: Request, bridge: FunctionBridgeDep) -> JSONResponse:
    """Authenticate the caller and run the requested catalog function.

    401 on a missing or wrong caller secret; otherwise always 200 with
    ``{"results": [...]}``, logical failures reported inside ``results[0]``.
    """
    if not bridge.authenticate(request.headers):
        logger.warning("SECURITY: unauthorized function call for tenant %s", tenant_id)
        return JSONResponse(status_code=401, content={"results": [{"error": "Unauthorized"}]})

    try:
        body = json.loads(await request.body())
    except (json.JSONDecodeError, UnicodeDecodeError):
        return JSONResponse(status_code=200, content={"results": [{"error": "Invalid request body"}]})

    name, params = parse_function_call(body)
    result = await bridge.invoke(tenant_id, name, params)
    return JSONResponse(status_code=200, content=result)


@router.get("/{tenant_id}")
async def function_health(tenant_id: str, bridge: FunctionBridgeDep) -> dict[str, Any]:
    return {"status": "ok", "tenantId": tenant_id, "functions": bridge.function_names}
