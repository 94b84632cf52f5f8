"""Stats samples, alerts and the runtime monitoring configuration."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from hostplane.types import (
    AlertSeverity, AlertStatus, DedupPolicy, new_id, utcnow,
)


# ── Host metrics ─────────────────────────────────────────────────────────────


class CpuStats(BaseModel):
    percent: float = 0.0
    cores: int = 0
    load_avg: list[float] = Field(default_factory=lambda: [0.0, 0.0, 0.0])


class MemoryStats(BaseModel):
    total: int = 0
    used: int = 0
    available: int = 0
    percent: float = 0.0


class DiskStats(BaseModel):
    total: int = 0
    used: int = 0
    free: int = 0
    percent: float = 0.0


class NetworkStats(BaseModel):
    bytes_in: int = 0
    bytes_out: int = 0
    packets_in: int = 0
    packets_out: int = 0


class ProcessStats(BaseModel):
    total: int = 0
    running: int = 0
    sleeping: int = 0
    stopped: int = 0


class HostMetrics(BaseModel):
    cpu: CpuStats = Field(default_factory=CpuStats)
    memory: MemoryStats = Field(default_factory=MemoryStats)
    disk: DiskStats = Field(default_factory=DiskStats)
    network: NetworkStats = Field(default_factory=NetworkStats)
    processes: ProcessStats = Field(default_factory=ProcessStats)
    uptime_s: int = 0


class ServerTotals(BaseModel):
    sites: int = 0
    services: int = 0
    users: int = 0
    services_running: int = 0
    services_stopped: int = 0


class ServerSample(HostMetrics):
    """Point-in-time host snapshot. Immutable once taken."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utcnow)
    totals: ServerTotals = Field(default_factory=ServerTotals)


# ── Site metrics ─────────────────────────────────────────────────────────────


class SiteUsage(BaseModel):
    cpu_percent: float = 0.0
    memory_bytes: int = 0
    memory_percent: float = 0.0
    memory_limit_mb: int = 512
    disk_bytes: int = 0
    disk_percent: float = 0.0
    disk_limit_mb: int = 1024
    file_count: int = 0


class ServiceCounts(BaseModel):
    total: int = 0
    running: int = 0
    stopped: int = 0
    failed: int = 0


class SiteSample(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    site_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    usage: SiteUsage = Field(default_factory=SiteUsage)
    services: ServiceCounts = Field(default_factory=ServiceCounts)


# ── Alerts ───────────────────────────────────────────────────────────────────


class Alert(BaseModel):
    id: str = Field(default_factory=new_id)
    type: str
    severity: AlertSeverity
    message: str = Field(max_length=500)
    data: dict[str, Any] = Field(default_factory=dict)
    site_id: Optional[str] = None
    service_id: Optional[str] = None
    status: AlertStatus = AlertStatus.ACTIVE
    occurrences: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime = Field(default_factory=utcnow)
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None


class AlertFilter(BaseModel):
    status: Optional[AlertStatus] = None
    severity: Optional[AlertSeverity] = None
    type: Optional[str] = None
    site_id: Optional[str] = None
    service_id: Optional[str] = None
    limit: int = Field(default=100, ge=1, le=1000)


# ── Runtime configuration ────────────────────────────────────────────────────


class Threshold(BaseModel):
    warning: float = Field(ge=0, le=100)
    critical: float = Field(ge=0, le=100)

    @model_validator(mode="after")
    def _ordered(self) -> Threshold:
        if self.warning >= self.critical:
            raise ValueError("warning threshold must be below critical")
        return self


def default_thresholds() -> dict[str, Threshold]:
    return {
        "cpu": Threshold(warning=70, critical=90),
        "memory": Threshold(warning=75, critical=90),
        "disk": Threshold(warning=80, critical=95),
    }


class MonitoringConfig(BaseModel):
    collection_interval: int = Field(default=30, ge=10, le=300)
    alerts_enabled: bool = True
    site_stats_enabled: bool = True
    retention_hours: int = Field(default=24, ge=1, le=168)
    thresholds: dict[str, Threshold] = Field(default_factory=default_thresholds)
    dedup_window_seconds: int = Field(default=300, ge=0)
    dedup_policy: DedupPolicy = DedupPolicy.ABSORB
    server_cache_seconds: float = Field(default=5.0, ge=0)
    site_cache_seconds: float = Field(default=10.0, ge=0)
    updated_at: datetime = Field(default_factory=utcnow)
