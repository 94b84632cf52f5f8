"""Tests for the database migration runner."""

import aiosqlite
import pytest

from hostplane.migrations.runner import apply_migrations, discover_migrations, get_schema_version


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "migrations.db")


def test_discover_finds_initial_migration():
    found = discover_migrations()
    assert found[0] == (1, "m_001_initial")
    assert [v for v, _ in found] == sorted(v for v, _ in found)


@pytest.mark.asyncio
async def test_fresh_database_starts_at_zero(db_path):
    async with aiosqlite.connect(db_path) as db:
        assert await get_schema_version(db) == 0


@pytest.mark.asyncio
async def test_apply_creates_tables_and_is_idempotent(db_path):
    async with aiosqlite.connect(db_path) as db:
        applied = await apply_migrations(db)
        assert applied[0] == 1
        assert await apply_migrations(db) == []
        assert await get_schema_version(db) == applied[-1]

        cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = {row[0] for row in await cursor.fetchall()}
    assert {"sites", "services", "server_stats", "site_stats", "alerts", "monitoring_config"} <= tables
