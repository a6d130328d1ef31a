"""Repository layer wrapping all database operations for the gateway state store.

Each repository receives an ``AsyncSession`` and exposes domain-specific
query and mutation methods.  Repositories never commit: the session scope
(``get_session`` / the request dependency) owns the transaction.  All
tenant-domain arguments are normalized here, so callers may pass the
platform's raw value.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gateway_core.domains import DEFAULT_DOMAIN_SUFFIX, normalize_tenant_domain, session_id_for
from gateway_core.state.tables import (
    CatalogItemTable,
    SubscriptionStatus,
    TenantSessionTable,
    TenantTable,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Dialect helpers
# ---------------------------------------------------------------------------


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware upsert: PostgreSQL ``ON CONFLICT DO UPDATE`` or SQLite equivalent.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)

    if update_columns:
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={col: getattr(stmt.excluded, col) for col in update_columns},
        )
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionRepository:
    """Read/upsert access to ``tenant_sessions``."""

    def __init__(self, session: AsyncSession, domain_suffix: str = DEFAULT_DOMAIN_SUFFIX) -> None:
        self._session = session
        self._suffix = domain_suffix

    async def get(self, tenant_domain: str, *, is_online: bool = False) -> TenantSessionTable | None:
        """Fetch the grant for *tenant_domain* in the given mode.

        Always reloads from the database (``populate_existing``) so a
        read-back after an upsert reflects the row as stored, not the
        identity-map copy.  Expired online grants are reported as missing.
        """
        domain = normalize_tenant_domain(tenant_domain, self._suffix)
        stmt = (
            select(TenantSessionTable)
            .where(TenantSessionTable.id == session_id_for(domain, is_online=is_online))
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is not None and row.is_online and row.expires is not None:
            expires = row.expires if row.expires.tzinfo else row.expires.replace(tzinfo=UTC)
            if expires <= datetime.now(UTC):
                return None
        return row

    async def upsert(
        self,
        *,
        tenant_domain: str,
        access_token: str,
        scope: list[str] | tuple[str, ...] | set[str] | None = None,
        is_online: bool = False,
        expires: datetime | None = None,
        state: str | None = None,
        online_access_info: dict[str, Any] | None = None,
    ) -> str:
        """Insert or replace the grant keyed on ``(tenant_domain, mode)``.

        Last write wins on ``access_token`` and ``scope``.  Returns the
        canonical session id.

        Raises
        ------
        ValueError
            If the token is empty, the domain normalizes to nothing, or an
            online grant has no expiry.
        """
        domain = normalize_tenant_domain(tenant_domain, self._suffix)
        if not domain:
            raise ValueError("tenant_domain is required")
        if not access_token:
            raise ValueError("access_token must be non-empty")
        if is_online and expires is None:
            raise ValueError("online sessions require an expiry")

        session_id = session_id_for(domain, is_online=is_online)
        now = datetime.now(UTC)
        values: dict[str, Any] = {
            "id": session_id,
            "tenant_domain": domain,
            "state": state,
            "is_online": is_online,
            "scope": ",".join(sorted(set(scope))) if scope else None,
            "expires": expires,
            "access_token": access_token,
            "online_access_info": online_access_info,
            "created_at": now,
            "updated_at": now,
        }
        await _dialect_upsert(
            self._session,
            TenantSessionTable,
            values=values,
            index_elements=["id"],
            update_columns=[
                "state",
                "scope",
                "expires",
                "access_token",
                "online_access_info",
                "updated_at",
            ],
        )
        await self._session.flush()
        return session_id

    async def delete_for_domain(self, tenant_domain: str) -> int:
        """Remove every grant for *tenant_domain* (tenant offboarding)."""
        domain = normalize_tenant_domain(tenant_domain, self._suffix)
        result = await self._session.execute(
            delete(TenantSessionTable).where(TenantSessionTable.tenant_domain == domain)
        )
        return result.rowcount or 0


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------

# Columns a caller may set through :meth:`TenantRepository.upsert`.
_TENANT_FIELDS: frozenset[str] = frozenset(
    {
        "display_name",
        "email",
        "access_token",
        "subscription_status",
        "plan_name",
        "call_minutes_used",
        "call_minutes_limit",
        "assistant_id",
        "phone_number",
        "provider_phone_number_id",
        "settings",
        "installed_at",
    }
)


class TenantRepository:
    """CRUD operations for the ``tenants`` table."""

    def __init__(self, session: AsyncSession, domain_suffix: str = DEFAULT_DOMAIN_SUFFIX) -> None:
        self._session = session
        self._suffix = domain_suffix

    async def get_by_domain(self, tenant_domain: str) -> TenantTable | None:
        domain = normalize_tenant_domain(tenant_domain, self._suffix)
        if not domain:
            return None
        stmt = (
            select(TenantTable)
            .where(TenantTable.tenant_domain == domain)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_id(self, tenant_id: str) -> TenantTable | None:
        stmt = select(TenantTable).where(TenantTable.id == tenant_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(self, tenant_domain: str, **fields: Any) -> TenantTable:
        """Create or partially update the tenant keyed on its normalized domain.

        Only the supplied *fields* are written on conflict; every other
        column keeps its stored value.

        Raises
        ------
        ValueError
            If the domain is empty or an unknown field is supplied.
        """
        domain = normalize_tenant_domain(tenant_domain, self._suffix)
        if not domain:
            raise ValueError("tenant_domain is required")
        unknown = set(fields) - _TENANT_FIELDS
        if unknown:
            raise ValueError(f"Unknown tenant fields: {sorted(unknown)}")
        status = fields.get("subscription_status")
        if status is not None:
            fields["subscription_status"] = SubscriptionStatus(status).value

        now = datetime.now(UTC)
        values: dict[str, Any] = {"tenant_domain": domain, **fields, "updated_at": now}
        await _dialect_upsert(
            self._session,
            TenantTable,
            values=values,
            index_elements=["tenant_domain"],
            update_columns=[*fields.keys(), "updated_at"],
        )
        await self._session.flush()

        row = await self.get_by_domain(domain)
        assert row is not None  # noqa: S101
        return row

    async def update_provisioning(
        self,
        tenant_domain: str,
        *,
        assistant_id: str,
        phone_number: str,
        provider_phone_number_id: str | None,
        settings: dict[str, Any],
    ) -> TenantTable | None:
        """Claim the tenant's provisioning slot with both ids and the settings map.

        A single conditional ``UPDATE``: it only matches while the stored
        row still lacks an assistant or a phone number, so of two concurrent
        provisioning runs exactly one is recorded.

        Returns
        -------
        TenantTable or None
            The updated row, or ``None`` when nothing matched (the tenant is
            already provisioned, or no longer exists).
        """
        if not assistant_id or not phone_number:
            raise ValueError("assistant_id and phone_number must be set together")
        domain = normalize_tenant_domain(tenant_domain, self._suffix)
        stmt = (
            update(TenantTable)
            .where(
                TenantTable.tenant_domain == domain,
                or_(TenantTable.assistant_id.is_(None), TenantTable.phone_number.is_(None)),
            )
            .values(
                assistant_id=assistant_id,
                phone_number=phone_number,
                provider_phone_number_id=provider_phone_number_id,
                settings=settings,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            logger.info("Provisioning slot for %s already claimed; update skipped", domain)
            return None
        return await self.get_by_domain(domain)

    async def set_subscription_status(self, tenant_domain: str, status: SubscriptionStatus | str) -> bool:
        """Update the subscription status of an existing tenant.

        Returns ``False`` when no tenant exists for the domain.
        """
        tenant = await self.get_by_domain(tenant_domain)
        if tenant is None:
            return False
        tenant.subscription_status = SubscriptionStatus(status).value
        tenant.updated_at = datetime.now(UTC)
        await self._session.flush()
        return True


# ---------------------------------------------------------------------------
# Catalog items
# ---------------------------------------------------------------------------


class CatalogRepository:
    """Tenant-scoped access to the mirrored catalog."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def recent(self, limit: int = 20) -> list[CatalogItemTable]:
        """Return up to *limit* items, newest first."""
        stmt = (
            select(CatalogItemTable)
            .where(CatalogItemTable.tenant_id == self._tenant_id)
            .order_by(CatalogItemTable.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def upsert(
        self,
        *,
        external_id: str,
        title: str,
        description: str | None = None,
        price_cents: int | None = None,
        currency: str = "USD",
        inventory_quantity: int | None = None,
    ) -> None:
        now = datetime.now(UTC)
        values: dict[str, Any] = {
            "tenant_id": self._tenant_id,
            "external_id": external_id,
            "title": title,
            "description": description,
            "price_cents": price_cents,
            "currency": currency,
            "inventory_quantity": inventory_quantity,
            "created_at": now,
            "updated_at": now,
        }
        await _dialect_upsert(
            self._session,
            CatalogItemTable,
            values=values,
            index_elements=["tenant_id", "external_id"],
            update_columns=[
                "title",
                "description",
                "price_cents",
                "currency",
                "inventory_quantity",
                "updated_at",
            ],
        )
        await self._session.flush()

    async def delete(self, external_id: str) -> bool:
        result = await self._session.execute(
            delete(CatalogItemTable).where(
                CatalogItemTable.tenant_id == self._tenant_id,
                CatalogItemTable.external_id == external_id,
            )
        )
        return bool(result.rowcount)
