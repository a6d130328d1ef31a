"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from gateway_core.state.database import (
    AllStoreClientsFailed,
    StoreClient,
    get_engine,
    session_scope,
    write_with_fallback,
)
from gateway_core.state.repository import (
    CatalogRepository,
    SessionRepository,
    TenantRepository,
)

__all__ = [
    "AllStoreClientsFailed",
    "CatalogRepository",
    "SessionRepository",
    "StoreClient",
    "TenantRepository",
    "get_engine",
    "session_scope",
    "write_with_fallback",
]
