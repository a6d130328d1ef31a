"""Tests for the SQLite adapter used in local dev mode."""

from __future__ import annotations

from pathlib import Path

import pytest
from gateway_core.state.database import get_engine
from gateway_core.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy import inspect

# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------


class TestGetLocalEngine:
    """Verify SQLite engine creation."""

    def test_creates_in_memory_engine(self) -> None:
        engine = get_local_engine(":memory:")
        assert "sqlite" in str(engine.url)

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "deep" / "state.db"
        engine = get_local_engine(db_path)
        assert db_path.parent.exists()
        assert "state.db" in str(engine.url)

    def test_get_engine_dispatches_sqlite_urls(self, tmp_path: Path) -> None:
        engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'x.db'}")
        assert engine.dialect.name == "sqlite"
        assert "x.db" in str(engine.url)


# ---------------------------------------------------------------------------
# Table creation
# ---------------------------------------------------------------------------


class TestCreateLocalTables:
    """Verify that ORM tables can be created in SQLite."""

    @pytest.mark.asyncio
    async def test_creates_all_tables_idempotently(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "state.db")
        await create_local_tables(engine)
        await create_local_tables(engine)

        async with engine.connect() as conn:
            names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        await engine.dispose()

        assert {"tenant_sessions", "tenants", "catalog_items"} <= set(names)
