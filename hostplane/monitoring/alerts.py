"""AlertEngine — threshold evaluation and deduplicated alerts.

An alert's identity is (type, severity, site, service). A trigger whose
identity matches an unresolved alert inside the dedup window is absorbed
into that alert instead of creating a new one. What absorbing does is
the configured DedupPolicy:

  absorb  return the existing alert unchanged
  count   bump occurrences and last_seen_at
  extend  like count, and the window is measured from last_seen_at
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable

import structlog

from hostplane.events.bus import EventBus
from hostplane.exceptions import NotFoundError, ValidationError
from hostplane.monitoring.models import Alert, AlertFilter, HostMetrics, MonitoringConfig
from hostplane.store.alerts import AlertRepository
from hostplane.store.database import Store
from hostplane.types import AlertSeverity, AlertStatus, AlertType, DedupPolicy, utcnow

logger = structlog.get_logger()

# metric name -> (alert type, label)
_METRICS = {
    "cpu": (AlertType.CPU_HIGH, "CPU"),
    "memory": (AlertType.MEMORY_HIGH, "Memory"),
    "disk": (AlertType.DISK_HIGH, "Disk"),
}


class AlertEngine:
    def __init__(
        self,
        store: Store,
        event_bus: EventBus,
        config: MonitoringConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._alerts = AlertRepository(store)
        self._bus = event_bus
        self.config = config or MonitoringConfig()
        self._clock = clock

    def configure(self, config: MonitoringConfig) -> None:
        self.config = config

    async def create_alert(
        self,
        type: str,
        severity: AlertSeverity,
        message: str,
        data: dict[str, Any] | None = None,
        site_id: str | None = None,
        service_id: str | None = None,
    ) -> Alert:
        now = self._clock()
        policy = self.config.dedup_policy
        window = timedelta(seconds=self.config.dedup_window_seconds)
        # Lookup and write share one transaction so concurrent triggers serialize
        async with self._store.transaction():
            existing = await self._alerts.find_open(
                type, severity, site_id, service_id,
                since=now - window,
                by_last_seen=policy == DedupPolicy.EXTEND,
            )
            if existing is not None:
                if policy != DedupPolicy.ABSORB:
                    existing.occurrences += 1
                    existing.last_seen_at = now
                    existing.data = {**existing.data, **(data or {})}
                    await self._alerts.save(existing)
            else:
                alert = Alert(
                    type=type,
                    severity=severity,
                    message=message[:500],
                    data=data or {},
                    site_id=site_id,
                    service_id=service_id,
                    created_at=now,
                    last_seen_at=now,
                )
                await self._alerts.insert(alert)

        if existing is not None:
            if policy != DedupPolicy.ABSORB:
                await self._bus.emit("alert.updated", existing.model_dump(mode="json"), source="alert_engine")
            logger.debug("alert_deduplicated", alert_id=existing.id, type=type, severity=severity.value)
            return existing

        logger.info("alert_created", alert_id=alert.id, type=type, severity=severity.value, message=alert.message)
        await self._bus.emit("alert.created", alert.model_dump(mode="json"), source="alert_engine")
        return alert

    async def evaluate(self, metrics: HostMetrics) -> list[Alert]:
        """Compare a host sample with the thresholds; critical is checked before warning."""
        raised = []
        values = {
            "cpu": metrics.cpu.percent,
            "memory": metrics.memory.percent,
            "disk": metrics.disk.percent,
        }
        for metric, value in values.items():
            threshold = self.config.thresholds.get(metric)
            if threshold is None:
                continue
            alert_type, label = _METRICS[metric]
            if value >= threshold.critical:
                severity, qualifier = AlertSeverity.CRITICAL, "critical"
            elif value >= threshold.warning:
                severity, qualifier = AlertSeverity.WARNING, "high"
            else:
                continue
            raised.append(await self.create_alert(
                alert_type.value, severity, f"{label} {qualifier}: {value:.1f}%",
                {"value": value, "threshold": getattr(threshold, severity.value)},
            ))
        return raised

    async def get(self, alert_id: str) -> Alert:
        alert = await self._alerts.get(alert_id)
        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found")
        return alert

    async def list_alerts(self, flt: AlertFilter | None = None) -> list[Alert]:
        """Active and acknowledged alerts by default, newest first."""
        return await self._alerts.list(flt or AlertFilter())

    async def acknowledge(self, alert_id: str, user_id: str | None = None) -> Alert:
        alert = await self.get(alert_id)
        if alert.status == AlertStatus.RESOLVED:
            raise ValidationError(f"Alert {alert_id} is already resolved")
        alert.status = AlertStatus.ACKNOWLEDGED
        alert.acknowledged_at = self._clock()
        alert.acknowledged_by = user_id
        await self._alerts.save(alert)
        logger.info("alert_acknowledged", alert_id=alert.id, user=user_id)
        await self._bus.emit("alert.updated", alert.model_dump(mode="json"), source="alert_engine")
        return alert

    async def resolve(self, alert_id: str) -> Alert:
        alert = await self.get(alert_id)
        if alert.status == AlertStatus.RESOLVED:
            return alert
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = self._clock()
        await self._alerts.save(alert)
        logger.info("alert_resolved", alert_id=alert.id)
        await self._bus.emit("alert.updated", alert.model_dump(mode="json"), source="alert_engine")
        return alert

    async def prune_resolved(self, older_than: timedelta = timedelta(days=7)) -> int:
        return await self._alerts.prune_resolved(self._clock() - older_than)

    async def count_active(self) -> int:
        return await self._alerts.count_open()
