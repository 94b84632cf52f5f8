"""Service records."""

from __future__ import annotations

import orjson

from hostplane.services.models import Service
from hostplane.store.database import Store, ts
from hostplane.types import ServiceStatus, utcnow


def _load(row) -> Service:
    return Service.model_validate(orjson.loads(row["doc"]))


class ServiceRepository:
    def __init__(self, store: Store) -> None:
        self._store = store

    async def insert(self, service: Service) -> Service:
        await self._store.execute(
            "INSERT INTO services (id, site_id, name, port, status, doc, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                service.id, service.site_id, service.name, service.port,
                service.status.value,
                orjson.dumps(service.model_dump(mode="json")).decode(),
                ts(service.created_at), ts(service.updated_at),
            ),
        )
        return service

    async def save(self, service: Service) -> Service:
        service.updated_at = utcnow()
        await self._store.execute(
            "UPDATE services SET name = ?, port = ?, status = ?, doc = ?, updated_at = ? "
            "WHERE id = ?",
            (
                service.name, service.port, service.status.value,
                orjson.dumps(service.model_dump(mode="json")).decode(),
                ts(service.updated_at), service.id,
            ),
        )
        return service

    async def delete(self, service_id: str) -> bool:
        return await self._store.execute("DELETE FROM services WHERE id = ?", (service_id,)) > 0

    async def get(self, service_id: str) -> Service | None:
        row = await self._store.fetch_one("SELECT doc FROM services WHERE id = ?", (service_id,))
        return _load(row) if row else None

    async def get_by_name(self, site_id: str, name: str) -> Service | None:
        row = await self._store.fetch_one(
            "SELECT doc FROM services WHERE site_id = ? AND name = ?", (site_id, name)
        )
        return _load(row) if row else None

    async def list_for_site(self, site_id: str) -> list[Service]:
        rows = await self._store.fetch_all(
            "SELECT doc FROM services WHERE site_id = ? ORDER BY name", (site_id,)
        )
        services = [_load(r) for r in rows]
        return sorted(services, key=lambda s: (s.start_priority, s.name))

    async def list_all(self, status: ServiceStatus | None = None) -> list[Service]:
        if status:
            rows = await self._store.fetch_all(
                "SELECT doc FROM services WHERE status = ? ORDER BY site_id, name",
                (status.value,),
            )
        else:
            rows = await self._store.fetch_all("SELECT doc FROM services ORDER BY site_id, name")
        return [_load(r) for r in rows]

    async def used_ports(self, site_id: str) -> set[int]:
        rows = await self._store.fetch_all(
            "SELECT port FROM services WHERE site_id = ?", (site_id,)
        )
        return {r["port"] for r in rows}

    async def count_by_status(self, site_id: str | None = None) -> dict[ServiceStatus, int]:
        if site_id:
            rows = await self._store.fetch_all(
                "SELECT status, COUNT(*) AS n FROM services WHERE site_id = ? GROUP BY status",
                (site_id,),
            )
        else:
            rows = await self._store.fetch_all(
                "SELECT status, COUNT(*) AS n FROM services GROUP BY status"
            )
        counts = {status: 0 for status in ServiceStatus}
        for r in rows:
            counts[ServiceStatus(r["status"])] = r["n"]
        return counts
