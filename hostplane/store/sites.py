"""Site records."""

from __future__ import annotations

import orjson

from hostplane.sites.models import PortRange, Site
from hostplane.store.database import Store, ts
from hostplane.types import SiteStatus, utcnow


def _load(row) -> Site:
    return Site.model_validate(orjson.loads(row["doc"]))


class SiteRepository:
    def __init__(self, store: Store) -> None:
        self._store = store

    async def insert(self, site: Site) -> Site:
        await self._store.execute(
            "INSERT INTO sites (id, name, status, owner_id, port_start, port_end, "
            "doc, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                site.id, site.name, site.status.value, site.owner_id,
                site.port_range.start, site.port_range.end,
                orjson.dumps(site.model_dump(mode="json")).decode(),
                ts(site.created_at), ts(site.updated_at),
            ),
        )
        return site

    async def save(self, site: Site) -> Site:
        site.updated_at = utcnow()
        await self._store.execute(
            "UPDATE sites SET name = ?, status = ?, owner_id = ?, port_start = ?, "
            "port_end = ?, doc = ?, updated_at = ? WHERE id = ?",
            (
                site.name, site.status.value, site.owner_id,
                site.port_range.start, site.port_range.end,
                orjson.dumps(site.model_dump(mode="json")).decode(),
                ts(site.updated_at), site.id,
            ),
        )
        return site

    async def get(self, site_id: str) -> Site | None:
        row = await self._store.fetch_one("SELECT doc FROM sites WHERE id = ?", (site_id,))
        return _load(row) if row else None

    async def get_by_name(self, name: str) -> Site | None:
        row = await self._store.fetch_one(
            "SELECT doc FROM sites WHERE name = ? AND status != ?",
            (name, SiteStatus.DELETED.value),
        )
        return _load(row) if row else None

    async def list(
        self,
        owner_id: str | None = None,
        status: SiteStatus | None = None,
        include_deleted: bool = False,
    ) -> list[Site]:
        conditions = []
        params: list = []
        if owner_id:
            conditions.append("owner_id = ?")
            params.append(owner_id)
        if status:
            conditions.append("status = ?")
            params.append(status.value)
        elif not include_deleted:
            conditions.append("status != ?")
            params.append(SiteStatus.DELETED.value)
        where = " AND ".join(conditions) if conditions else "1=1"
        rows = await self._store.fetch_all(
            f"SELECT doc FROM sites WHERE {where} ORDER BY created_at DESC", params
        )
        return [_load(r) for r in rows]

    async def count(self) -> int:
        return await self._store.fetch_value(
            "SELECT COUNT(*) FROM sites WHERE status != ?", (SiteStatus.DELETED.value,)
        )

    async def reserved_ranges(self) -> list[PortRange]:
        """Port ranges held by every site that is not deleted, by start."""
        rows = await self._store.fetch_all(
            "SELECT port_start, port_end FROM sites WHERE status != ? ORDER BY port_start",
            (SiteStatus.DELETED.value,),
        )
        return [PortRange(start=r["port_start"], end=r["port_end"]) for r in rows]

    async def find_by_domain(self, domain: str) -> Site | None:
        domain = domain.lower()
        for site in await self.list():
            if any(d.domain == domain for d in site.domains):
                return site
        return None
