"""Exactly-once provisioning of a voice assistant and phone number per tenant.

Flow (terminal on first unrecoverable failure):

1. Idempotency check: a tenant with both ``assistant_id`` and
   ``phone_number`` returns ``already_provisioned`` with no side effects.
2. Context assembly: up to ``catalog_context_limit`` recent catalog items,
   or a single placeholder so the assistant configuration is never empty.
3. Validation before any external call.  An assistant left behind by an
   earlier run that never got a phone number is deleted before redriving.
4. Assistant creation under :class:`RetryPolicy` (transient errors only).
5. Phone number acquisition through a :class:`FallbackSequence` of area
   codes, each candidate under its own retry policy.  If every candidate
   fails, the assistant created in step 4 is deleted.
6. Persistence of both ids plus the feature flag in one conditional
   update that only matches an unprovisioned tenant.  When a concurrent
   run claimed the tenant first, this run's number and assistant are
   released and the stored outcome is returned as ``already_provisioned``.
   A store failure is reported as ``PROVISIONED_NOT_SAVED`` with the
   provider ids so an operator can reconcile.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from gateway.config import GatewaySettings
from gateway.errors import ConflictError, ExternalServiceError, GatewayError, NotFoundError, ValidationError
from gateway.services.assistant_config import ContextItem, build_assistant_config
from gateway.services.provider_client import ProviderClient, ProviderError, ProviderErrorKind
from gateway_core.domains import DEFAULT_DOMAIN_SUFFIX, display_name_from_domain
from gateway_core.retry import FallbackExhausted, FallbackSequence, RetryPolicy, async_retry_with_backoff
from gateway_core.state.database import AllStoreClientsFailed, StoreClient, write_with_fallback
from gateway_core.state.repository import CatalogRepository, TenantRepository
from gateway_core.state.tables import TenantTable

logger = logging.getLogger(__name__)

PLACEHOLDER_ITEM = ContextItem(title="Sample Product", price_cents=9900, currency="USD")

STATUS_ALREADY_PROVISIONED = "already_provisioned"
STATUS_PROVISIONED = "provisioned"


@dataclass
class ProvisioningAttempt:
    """Retry/fallback cursor for one orchestration call."""

    assistant_attempts: int = 0
    phone_attempts: int = 0
    candidate_index: int = 0
    last_error: str | None = None

    def record(self, exc: Exception) -> None:
        self.last_error = type(exc).__name__
        if isinstance(exc, ProviderError):
            self.last_error = f"ProviderError.{exc.kind.value}"


@dataclass(frozen=True)
class ProvisionResult:
    status: str
    assistant_id: str
    phone_number: str

    def to_body(self) -> dict[str, Any]:
        return {
            "success": True,
            "status": self.status,
            "assistantId": self.assistant_id,
            "phoneNumber": self.phone_number,
        }


def _is_transient(exc: Exception) -> bool:
    return isinstance(exc, ProviderError) and exc.is_transient


def _phone_should_advance(exc: Exception) -> bool:
    # Bad credentials fail every area code alike; do not walk the list.
    return isinstance(exc, ProviderError) and exc.kind is not ProviderErrorKind.UNAUTHORIZED


class ProvisioningService:
    """Orchestrates provider resource creation and its durable record.

    Parameters
    ----------
    provider:
        Provider API client.
    stores:
        Ordered store clients; reads use the primary, the final write
        falls back through the list.
    assistant_policy, phone_policy:
        Retry policies for the two provider calls.
    area_codes:
        Default area-code preference order; a tenant-level
        ``preferred_area_code`` setting is tried first.
    server_url:
        Base URL the provider calls back for function invocations.
    server_secret:
        Shared secret the provider presents on those callbacks.
    """

    def __init__(
        self,
        provider: ProviderClient,
        stores: Sequence[StoreClient],
        *,
        assistant_policy: RetryPolicy,
        phone_policy: RetryPolicy,
        area_codes: Sequence[str],
        server_url: str,
        server_secret: str,
        voice_id: str = "rachel",
        context_limit: int = 20,
        domain_suffix: str = DEFAULT_DOMAIN_SUFFIX,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not stores:
            raise ValueError("at least one store client is required")
        self._provider = provider
        self._stores = list(stores)
        self._assistant_policy = assistant_policy
        self._phone_policy = phone_policy
        self._area_codes = list(area_codes)
        self._server_url = server_url.rstrip("/")
        self._server_secret = server_secret
        self._voice_id = voice_id
        self._context_limit = context_limit
        self._suffix = domain_suffix
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: GatewaySettings,
        provider: ProviderClient,
        stores: Sequence[StoreClient],
    ) -> ProvisioningService:
        return cls(
            provider,
            stores,
            assistant_policy=RetryPolicy(
                max_attempts=settings.assistant_max_attempts,
                base_delay=settings.assistant_backoff_seconds,
            ),
            phone_policy=RetryPolicy(
                max_attempts=settings.phone_max_attempts,
                base_delay=settings.phone_backoff_seconds,
            ),
            area_codes=settings.phone_area_codes,
            server_url=f"{settings.app_url.rstrip('/')}/functions",
            server_secret=settings.effective_function_secret,
            voice_id=settings.provider_voice_id,
            context_limit=settings.catalog_context_limit,
            domain_suffix=settings.tenant_domain_suffix,
        )

    # -- Status --------------------------------------------------------------

    async def status(self, tenant_domain: str) -> dict[str, Any]:
        async with self._stores[0].scope() as session:
            tenant = await self._load_tenant(session, tenant_domain)
            return {
                "isProvisioned": tenant.is_provisioned,
                "assistantId": tenant.assistant_id,
                "phoneNumber": tenant.phone_number,
            }

    # -- Provision -----------------------------------------------------------

    async def provision(self, tenant_domain: str) -> ProvisionResult:
        """Provision the tenant, or return the existing outcome.

        Raises
        ------
        NotFoundError
            No tenant record for the domain (the app must be reinstalled).
        ValidationError
            Required configuration missing; nothing was created.
        ExternalServiceError
            Provider failure.  ``CONFIGURATION_ERROR`` for a rejected
            assistant, ``PHONE_NUMBER_UNAVAILABLE`` when every area code
            failed (the assistant has been deleted again).
        ConflictError
            A concurrent run changed the record and left it unprovisioned.
        GatewayError
            ``PROVISIONED_NOT_SAVED`` when the provider succeeded but the
            record could not be written.
        """
        async with self._stores[0].scope() as session:
            tenant = await self._load_tenant(session, tenant_domain)
            if tenant.is_provisioned:
                logger.info("Tenant %s already provisioned; no provider calls made", tenant.tenant_domain)
                return ProvisionResult(
                    STATUS_ALREADY_PROVISIONED,
                    assistant_id=tenant.assistant_id or "",
                    phone_number=tenant.phone_number or "",
                )
            stale_assistant_id = tenant.assistant_id
            items = await self._context_items(session, tenant)
            tenant_id = tenant.id
            domain = tenant.tenant_domain
            name = tenant.display_name or display_name_from_domain(domain, self._suffix)
            existing_settings = dict(tenant.settings or {})

        self._validate(tenant_id, name, items)
        if stale_assistant_id:
            logger.warning(
                "Tenant %s has partial provisioning state (assistant %s, no phone); redriving",
                domain,
                stale_assistant_id,
            )
            await self._compensate(stale_assistant_id, reason="partial provisioning state")
        cursor = ProvisioningAttempt()

        config = build_assistant_config(
            tenant_name=name,
            items=items,
            server_url=f"{self._server_url}/{tenant_id}",
            server_secret=self._server_secret,
            voice_id=self._voice_id,
            business_hours=existing_settings.get("business_hours"),
        )
        assistant_id = await self._create_assistant(config, cursor)
        phone = await self._acquire_phone(assistant_id, name, existing_settings.get("preferred_area_code"), cursor)

        phone_number = phone["number"]
        settings = {
            **existing_settings,
            "voice_receptionist_active": True,
            "provisioned_at": datetime.now(UTC).isoformat(),
        }
        claimed = await self._persist(domain, assistant_id, phone_number, phone.get("id"), settings)
        if not claimed:
            return await self._yield_to_concurrent_run(domain, assistant_id, phone.get("id"))
        logger.info(
            "Provisioned tenant %s: assistant=%s phone=%s (assistant_attempts=%d, phone_attempts=%d)",
            domain,
            assistant_id,
            phone_number,
            cursor.assistant_attempts,
            cursor.phone_attempts,
        )
        return ProvisionResult(STATUS_PROVISIONED, assistant_id=assistant_id, phone_number=phone_number)

    # -- Steps ---------------------------------------------------------------

    async def _load_tenant(self, session: AsyncSession, tenant_domain: str) -> TenantTable:
        tenant = await TenantRepository(session, self._suffix).get_by_domain(tenant_domain)
        if tenant is None:
            raise NotFoundError(
                "Tenant not found. Please re-authenticate the app.",
                details={"tenantDomain": tenant_domain},
            )
        return tenant

    async def _context_items(self, session: AsyncSession, tenant: TenantTable) -> list[ContextItem]:
        rows = await CatalogRepository(session, tenant.id).recent(self._context_limit)
        if not rows:
            logger.info("No catalog items for %s; using placeholder context", tenant.tenant_domain)
            return [PLACEHOLDER_ITEM]
        return [
            ContextItem(title=row.title, price_cents=row.price_cents, currency=row.currency)
            for row in rows
        ]

    @staticmethod
    def _validate(tenant_id: str, name: str, items: list[ContextItem]) -> None:
        missing = [
            label
            for label, present in (("tenantId", bool(tenant_id)), ("tenantName", bool(name)), ("items", bool(items)))
            if not present
        ]
        if missing:
            raise ValidationError(
                f"Missing required provisioning configuration: {', '.join(missing)}",
                details={"missing": missing},
            )

    async def _create_assistant(self, config: dict[str, Any], cursor: ProvisioningAttempt) -> str:
        async def _attempt() -> dict[str, Any]:
            cursor.assistant_attempts += 1
            return await self._provider.create_assistant(config)

        try:
            body = await async_retry_with_backoff(
                _attempt,
                self._assistant_policy,
                _is_transient,
                on_retry=lambda _n, exc: cursor.record(exc),
                sleep=self._sleep,
            )
        except ProviderError as exc:
            cursor.record(exc)
            if exc.is_transient:
                raise ExternalServiceError(
                    f"Assistant creation failed after {cursor.assistant_attempts} attempt(s)",
                    service="provider",
                    details={"attempts": cursor.assistant_attempts},
                ) from exc
            raise ExternalServiceError(
                "Provider rejected the assistant configuration",
                service="provider",
                code="CONFIGURATION_ERROR",
                details={"providerStatus": exc.status_code},
            ) from exc
        return str(body["id"])

    async def _acquire_phone(
        self,
        assistant_id: str,
        name: str,
        preferred_area_code: str | None,
        cursor: ProvisioningAttempt,
    ) -> dict[str, Any]:
        sequence: FallbackSequence[str] = FallbackSequence([preferred_area_code or "", *self._area_codes])

        async def _try_area_code(area_code: str) -> dict[str, Any]:
            async def _attempt() -> dict[str, Any]:
                cursor.phone_attempts += 1
                return await self._provider.create_phone_number(
                    assistant_id=assistant_id,
                    area_code=area_code,
                    name=f"{name} Receptionist",
                )

            return await async_retry_with_backoff(
                _attempt,
                self._phone_policy,
                _is_transient,
                on_retry=lambda _n, exc: cursor.record(exc),
                sleep=self._sleep,
            )

        def _advance(index: int, _candidate: str, exc: Exception) -> None:
            cursor.candidate_index = index + 1
            cursor.record(exc)

        try:
            phone, area_code = await sequence.run(_try_area_code, _phone_should_advance, on_advance=_advance)
        except (FallbackExhausted, ProviderError) as exc:
            await self._compensate(assistant_id, reason="phone acquisition failed")
            raise ExternalServiceError(
                "No phone numbers available. Please try again later or contact support.",
                service="provider",
                code="PHONE_NUMBER_UNAVAILABLE",
                details={"triedAreaCodes": list(sequence.candidates[: cursor.candidate_index + 1])},
            ) from exc
        logger.info("Acquired phone number in area code %s for assistant %s", area_code, assistant_id)
        return phone

    async def _compensate(self, assistant_id: str, phone_number_id: str | None = None, *, reason: str) -> None:
        """Release provider resources that will not be recorded for the tenant.

        The phone number goes first since it is attached to the assistant.
        Failures are logged for manual cleanup and never mask the caller's
        outcome.
        """
        if phone_number_id:
            try:
                await self._provider.release_phone_number(phone_number_id)
            except ProviderError as exc:
                logger.error(
                    "Releasing phone number %s failed (%s); manual cleanup required: %s",
                    phone_number_id,
                    reason,
                    exc,
                )
        try:
            await self._provider.delete_assistant(assistant_id)
        except ProviderError as exc:
            logger.error(
                "Compensating delete of assistant %s failed (%s); manual cleanup required: %s",
                assistant_id,
                reason,
                exc,
            )
            return
        logger.info("Deleted orphaned assistant %s (%s)", assistant_id, reason)

    async def _yield_to_concurrent_run(
        self,
        tenant_domain: str,
        assistant_id: str,
        phone_number_id: str | None,
    ) -> ProvisionResult:
        """Undo this run's resources after another run recorded its own first."""
        logger.warning(
            "Concurrent provisioning of %s was recorded first; releasing assistant %s",
            tenant_domain,
            assistant_id,
        )
        await self._compensate(assistant_id, phone_number_id, reason="concurrent provisioning")
        async with self._stores[0].scope() as session:
            tenant = await self._load_tenant(session, tenant_domain)
            if tenant.is_provisioned:
                return ProvisionResult(
                    STATUS_ALREADY_PROVISIONED,
                    assistant_id=tenant.assistant_id or "",
                    phone_number=tenant.phone_number or "",
                )
        raise ConflictError(
            "Provisioning state changed concurrently. Please try again.",
            details={"tenantDomain": tenant_domain},
        )

    async def _persist(
        self,
        tenant_domain: str,
        assistant_id: str,
        phone_number: str,
        provider_phone_number_id: str | None,
        settings: dict[str, Any],
    ) -> bool:
        """Record the provider ids; ``False`` when another run already claimed the tenant."""
        suffix = self._suffix

        async def _write(session: AsyncSession) -> bool:
            row = await TenantRepository(session, suffix).update_provisioning(
                tenant_domain,
                assistant_id=assistant_id,
                phone_number=phone_number,
                provider_phone_number_id=provider_phone_number_id,
                settings=settings,
            )
            return row is not None

        try:
            claimed, _ = await write_with_fallback(self._stores, _write)
        except AllStoreClientsFailed as exc:
            logger.error(
                "Provisioned %s at provider but failed to save (assistant=%s, phone=%s): %s",
                tenant_domain,
                assistant_id,
                phone_number,
                exc,
            )
            raise GatewayError(
                "Provisioning succeeded but failed to save. Please contact support.",
                code="PROVISIONED_NOT_SAVED",
                status_code=500,
                details={"assistantId": assistant_id, "phoneNumber": phone_number},
            ) from exc
        return claimed
