"""Migration runner — applies pending migrations when the store opens.

Migrations are modules in `hostplane/migrations/` named
`m_NNN_description.py` where NNN is a zero-padded version number.
Each defines `async def upgrade(db: aiosqlite.Connection)`.
"""

from __future__ import annotations

import importlib
import logging
from pathlib import Path

import aiosqlite

_logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent
MIGRATION_PREFIX = "m_"


def discover_migrations() -> list[tuple[int, str]]:
    """(version, module name) pairs, ascending."""
    found: list[tuple[int, str]] = []
    for mf in sorted(MIGRATIONS_DIR.glob(f"{MIGRATION_PREFIX}*.py")):
        parts = mf.stem.split("_")
        if len(parts) < 2:
            continue
        try:
            found.append((int(parts[1]), mf.stem))
        except ValueError:
            continue
    return sorted(found)


async def get_schema_version(db: aiosqlite.Connection) -> int:
    await db.execute(
        "CREATE TABLE IF NOT EXISTS schema_version "
        "(version INTEGER PRIMARY KEY, applied_at TEXT DEFAULT CURRENT_TIMESTAMP)"
    )
    await db.commit()
    cursor = await db.execute("SELECT MAX(version) FROM schema_version")
    row = await cursor.fetchone()
    return row[0] if row[0] is not None else 0


async def apply_migrations(db: aiosqlite.Connection) -> list[int]:
    """Apply all pending migrations. Returns the applied version numbers."""
    current = await get_schema_version(db)
    applied: list[int] = []

    for version, module_name in discover_migrations():
        if version <= current:
            continue
        module = importlib.import_module(f"hostplane.migrations.{module_name}")
        try:
            await module.upgrade(db)
            await db.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        _logger.info("Applied migration %s", module_name)
        applied.append(version)

    return applied
