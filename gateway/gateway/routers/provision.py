"""Provisioning endpoints for the authenticated tenant."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from gateway.dependencies import ProvisioningServiceDep, TenantDomainDep

router = APIRouter(prefix="/provision", tags=["provisioning"])


@router.post("")
async def provision(tenant_domain: TenantDomainDep, service: ProvisioningServiceDep) -> dict[str, Any]:
    """Create the assistant and phone number once; repeat calls return the stored outcome.

    Failures propagate as :class:`~gateway.errors.GatewayError` and are
    rendered as the error envelope by the application exception handler.
    """
    result = await service.provision(tenant_domain)
    return result.to_body()


@router.get("")
async def provisioning_status(tenant_domain: TenantDomainDep, service: ProvisioningServiceDep) -> dict[str, Any]:
    return await service.status(tenant_domain)
