"""Append-only server and site samples."""

from __future__ import annotations

from datetime import datetime

import orjson

from hostplane.monitoring.models import ServerSample, SiteSample
from hostplane.store.database import Store, ts


class StatsRepository:
    def __init__(self, store: Store) -> None:
        self._store = store

    async def add_server(self, sample: ServerSample) -> None:
        await self._store.execute(
            "INSERT INTO server_stats (id, timestamp, doc) VALUES (?, ?, ?)",
            (sample.id, ts(sample.timestamp), orjson.dumps(sample.model_dump(mode="json")).decode()),
        )

    async def add_site(self, sample: SiteSample) -> None:
        await self._store.execute(
            "INSERT INTO site_stats (id, site_id, timestamp, doc) VALUES (?, ?, ?, ?)",
            (
                sample.id, sample.site_id, ts(sample.timestamp),
                orjson.dumps(sample.model_dump(mode="json")).decode(),
            ),
        )

    async def latest_server(self) -> ServerSample | None:
        row = await self._store.fetch_one(
            "SELECT doc FROM server_stats ORDER BY timestamp DESC LIMIT 1"
        )
        return ServerSample.model_validate(orjson.loads(row["doc"])) if row else None

    async def latest_site(self, site_id: str) -> SiteSample | None:
        row = await self._store.fetch_one(
            "SELECT doc FROM site_stats WHERE site_id = ? ORDER BY timestamp DESC LIMIT 1",
            (site_id,),
        )
        return SiteSample.model_validate(orjson.loads(row["doc"])) if row else None

    async def server_history(self, since: datetime, limit: int) -> list[ServerSample]:
        """Samples newer than `since`, the most recent `limit` of them, oldest first."""
        rows = await self._store.fetch_all(
            "SELECT doc FROM server_stats WHERE timestamp >= ? ORDER BY timestamp DESC LIMIT ?",
            (ts(since), limit),
        )
        return [ServerSample.model_validate(orjson.loads(r["doc"])) for r in reversed(rows)]

    async def site_history(self, site_id: str, since: datetime, limit: int) -> list[SiteSample]:
        rows = await self._store.fetch_all(
            "SELECT doc FROM site_stats WHERE site_id = ? AND timestamp >= ? "
            "ORDER BY timestamp DESC LIMIT ?",
            (site_id, ts(since), limit),
        )
        return [SiteSample.model_validate(orjson.loads(r["doc"])) for r in reversed(rows)]

    async def prune(self, before: datetime) -> tuple[int, int]:
        """Delete samples older than `before`. Returns (server, site) counts."""
        async with self._store.transaction() as db:
            server = await db.execute("DELETE FROM server_stats WHERE timestamp < ?", (ts(before),))
            site = await db.execute("DELETE FROM site_stats WHERE timestamp < ?", (ts(before),))
            return server.rowcount, site.rowcount
