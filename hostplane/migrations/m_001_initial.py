"""Migration 001: sites, services, samples, alerts, monitoring config."""

from __future__ import annotations

import aiosqlite

_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS sites (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        status TEXT NOT NULL,
        owner_id TEXT DEFAULT '',
        port_start INTEGER NOT NULL,
        port_end INTEGER NOT NULL,
        doc TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_sites_live_name "
    "ON sites(name) WHERE status != 'deleted'",
    "CREATE INDEX IF NOT EXISTS idx_sites_status ON sites(status)",
    """
    CREATE TABLE IF NOT EXISTS services (
        id TEXT PRIMARY KEY,
        site_id TEXT NOT NULL,
        name TEXT NOT NULL,
        port INTEGER NOT NULL,
        status TEXT NOT NULL,
        doc TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (site_id, name),
        UNIQUE (site_id, port)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_services_status ON services(status)",
    """
    CREATE TABLE IF NOT EXISTS server_stats (
        id TEXT PRIMARY KEY,
        timestamp TEXT NOT NULL,
        doc TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_server_stats_ts ON server_stats(timestamp)",
    """
    CREATE TABLE IF NOT EXISTS site_stats (
        id TEXT PRIMARY KEY,
        site_id TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        doc TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_site_stats_site_ts ON site_stats(site_id, timestamp)",
    """
    CREATE TABLE IF NOT EXISTS alerts (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        severity TEXT NOT NULL,
        status TEXT NOT NULL,
        site_id TEXT,
        service_id TEXT,
        created_at TEXT NOT NULL,
        last_seen_at TEXT NOT NULL,
        resolved_at TEXT,
        doc TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_alerts_status_created ON alerts(status, created_at)",
    """
    CREATE TABLE IF NOT EXISTS monitoring_config (
        id TEXT PRIMARY KEY,
        doc TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
]


async def upgrade(db: aiosqlite.Connection) -> None:
    for statement in _STATEMENTS:
        await db.execute(statement)
