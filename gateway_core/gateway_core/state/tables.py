"""SQLAlchemy 2.0 ORM table definitions for the gateway state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for ``create_all`` in local mode and
for the repository layer.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (stored as TEXT)
# on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


class SubscriptionStatus(str, Enum):
    """Billing lifecycle of an installed tenant."""

    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all gateway tables."""


# ---------------------------------------------------------------------------
# Authorization grants
# ---------------------------------------------------------------------------


class TenantSessionTable(Base):
    """One authorization grant for one tenant domain.

    The primary key is the canonical session id (``offline_<domain>`` for
    the persistent grant), so at most one offline session can exist per
    tenant domain.
    """

    __tablename__ = "tenant_sessions"

    id: Mapped[str] = mapped_column(String(300), primary_key=True)
    tenant_domain: Mapped[str] = mapped_column(String(255), nullable=False)
    state: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_online: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    scope: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    online_access_info: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (Index("ix_tenant_sessions_domain", "tenant_domain"),)


# ---------------------------------------------------------------------------
# Tenant metadata
# ---------------------------------------------------------------------------


class TenantTable(Base):
    """Gateway-owned tenant metadata: subscription, usage and provisioning."""

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_domain: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    # Legacy credential copy; the offline session token takes precedence.
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    subscription_status: Mapped[str] = mapped_column(
        String(32), default=SubscriptionStatus.TRIAL.value, nullable=False
    )
    plan_name: Mapped[str] = mapped_column(String(64), default="starter", nullable=False)
    call_minutes_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    call_minutes_limit: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    assistant_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    provider_phone_number_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    settings: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    installed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    @property
    def is_provisioned(self) -> bool:
        """Both provisioning fields must be present; partial state does not count."""
        return bool(self.assistant_id) and bool(self.phone_number)


# ---------------------------------------------------------------------------
# Catalog mirror
# ---------------------------------------------------------------------------


class CatalogItemTable(Base):
    """Local mirror of a tenant's catalog items, kept in sync by webhooks."""

    __tablename__ = "catalog_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    currency: Mapped[str] = mapped_column(String(8), default="USD", nullable=False)
    inventory_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", name="uq_catalog_items_tenant_external"),
        Index("ix_catalog_items_tenant_created", "tenant_id", "created_at"),
    )
