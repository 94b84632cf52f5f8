"""Persisted runtime monitoring configuration (a single row)."""

from __future__ import annotations

import orjson

from hostplane.monitoring.models import MonitoringConfig
from hostplane.store.database import Store, ts

_ROW_ID = "monitoring"


class ConfigRepository:
    def __init__(self, store: Store) -> None:
        self._store = store

    async def load(self) -> MonitoringConfig:
        row = await self._store.fetch_one(
            "SELECT doc FROM monitoring_config WHERE id = ?", (_ROW_ID,)
        )
        if row is None:
            return MonitoringConfig()
        return MonitoringConfig.model_validate(orjson.loads(row["doc"]))

    async def save(self, config: MonitoringConfig) -> MonitoringConfig:
        await self._store.execute(
            "INSERT INTO monitoring_config (id, doc, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET doc = excluded.doc, updated_at = excluded.updated_at",
            (
                _ROW_ID, orjson.dumps(config.model_dump(mode="json")).decode(),
                ts(config.updated_at),
            ),
        )
        return config
