"""Initial schema for the gateway state store.

Creates the three gateway-owned tables: tenant_sessions (authorization
grants), tenants (subscription, usage and provisioning state) and
catalog_items (webhook-maintained catalog mirror).

Revision ID: 001
Revises: None
Create Date: 2026-10-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
_NOW = sa.text("CURRENT_TIMESTAMP")


def upgrade() -> None:
    # ------------------------------------------------------------------
    # tenant_sessions
    # ------------------------------------------------------------------
    op.create_table(
        "tenant_sessions",
        sa.Column("id", sa.String(300), primary_key=True),
        sa.Column("tenant_domain", sa.String(255), nullable=False),
        sa.Column("state", sa.String(255), nullable=True),
        sa.Column("is_online", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("scope", sa.Text(), nullable=True),
        sa.Column("expires", sa.DateTime(timezone=True), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("online_access_info", _JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW),
    )
    op.create_index("ix_tenant_sessions_domain", "tenant_sessions", ["tenant_domain"])

    # ------------------------------------------------------------------
    # tenants
    # ------------------------------------------------------------------
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_domain", sa.String(255), nullable=False, unique=True),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("subscription_status", sa.String(32), nullable=False, server_default="trial"),
        sa.Column("plan_name", sa.String(64), nullable=False, server_default="starter"),
        sa.Column("call_minutes_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("call_minutes_limit", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("assistant_id", sa.String(255), nullable=True),
        sa.Column("phone_number", sa.String(32), nullable=True),
        sa.Column("provider_phone_number_id", sa.String(255), nullable=True),
        sa.Column("settings", _JSON, nullable=True),
        sa.Column("installed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW),
        sa.CheckConstraint(
            "subscription_status IN ('trial', 'active', 'past_due', 'cancelled')",
            name="ck_tenants_subscription_status",
        ),
    )

    # ------------------------------------------------------------------
    # catalog_items
    # ------------------------------------------------------------------
    op.create_table(
        "catalog_items",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(36),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("external_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(512), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price_cents", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(8), nullable=False, server_default="USD"),
        sa.Column("inventory_quantity", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=_NOW),
        sa.UniqueConstraint("tenant_id", "external_id", name="uq_catalog_items_tenant_external"),
    )
    op.create_index("ix_catalog_items_tenant_created", "catalog_items", ["tenant_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_catalog_items_tenant_created", table_name="catalog_items")
    op.drop_table("catalog_items")
    op.drop_table("tenants")
    op.drop_index("ix_tenant_sessions_domain", table_name="tenant_sessions")
    op.drop_table("tenant_sessions")
