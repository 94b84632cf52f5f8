"""Alert records."""

from __future__ import annotations

from datetime import datetime

import orjson

from hostplane.monitoring.models import Alert, AlertFilter
from hostplane.store.database import Store, ts
from hostplane.types import AlertSeverity, AlertStatus


def _load(row) -> Alert:
    return Alert.model_validate(orjson.loads(row["doc"]))


class AlertRepository:
    def __init__(self, store: Store) -> None:
        self._store = store

    async def insert(self, alert: Alert) -> Alert:
        await self._store.execute(
            "INSERT INTO alerts (id, type, severity, status, site_id, service_id, "
            "created_at, last_seen_at, resolved_at, doc) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                alert.id, alert.type, alert.severity.value, alert.status.value,
                alert.site_id, alert.service_id, ts(alert.created_at),
                ts(alert.last_seen_at),
                ts(alert.resolved_at) if alert.resolved_at else None,
                orjson.dumps(alert.model_dump(mode="json")).decode(),
            ),
        )
        return alert

    async def save(self, alert: Alert) -> Alert:
        await self._store.execute(
            "UPDATE alerts SET status = ?, last_seen_at = ?, resolved_at = ?, doc = ? WHERE id = ?",
            (
                alert.status.value, ts(alert.last_seen_at),
                ts(alert.resolved_at) if alert.resolved_at else None,
                orjson.dumps(alert.model_dump(mode="json")).decode(), alert.id,
            ),
        )
        return alert

    async def get(self, alert_id: str) -> Alert | None:
        row = await self._store.fetch_one("SELECT doc FROM alerts WHERE id = ?", (alert_id,))
        return _load(row) if row else None

    async def find_open(
        self,
        type: str,
        severity: AlertSeverity,
        site_id: str | None,
        service_id: str | None,
        since: datetime,
        by_last_seen: bool = False,
    ) -> Alert | None:
        """Most recent unresolved alert with the same identity inside the window."""
        column = "last_seen_at" if by_last_seen else "created_at"
        row = await self._store.fetch_one(
            "SELECT doc FROM alerts WHERE type = ? AND severity = ? "
            "AND site_id IS ? AND service_id IS ? AND status IN (?, ?) "
            f"AND {column} >= ? ORDER BY created_at DESC LIMIT 1",
            (
                type, severity.value, site_id, service_id,
                AlertStatus.ACTIVE.value, AlertStatus.ACKNOWLEDGED.value, ts(since),
            ),
        )
        return _load(row) if row else None

    async def list(self, flt: AlertFilter) -> list[Alert]:
        conditions = []
        params: list = []
        if flt.status:
            conditions.append("status = ?")
            params.append(flt.status.value)
        else:
            conditions.append("status IN (?, ?)")
            params.extend([AlertStatus.ACTIVE.value, AlertStatus.ACKNOWLEDGED.value])
        if flt.severity:
            conditions.append("severity = ?")
            params.append(flt.severity.value)
        if flt.type:
            conditions.append("type = ?")
            params.append(flt.type)
        if flt.site_id:
            conditions.append("site_id = ?")
            params.append(flt.site_id)
        if flt.service_id:
            conditions.append("service_id = ?")
            params.append(flt.service_id)
        params.append(flt.limit)
        rows = await self._store.fetch_all(
            f"SELECT doc FROM alerts WHERE {' AND '.join(conditions)} "
            "ORDER BY created_at DESC LIMIT ?",
            params,
        )
        return [_load(r) for r in rows]

    async def count_open(self) -> int:
        return await self._store.fetch_value(
            "SELECT COUNT(*) FROM alerts WHERE status = ?", (AlertStatus.ACTIVE.value,)
        )

    async def prune_resolved(self, before: datetime) -> int:
        return await self._store.execute(
            "DELETE FROM alerts WHERE status = ? AND resolved_at < ?",
            (AlertStatus.RESOLVED.value, ts(before)),
        )
