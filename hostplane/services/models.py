"""Service data model — supervised processes inside a site."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from hostplane.sites.models import ResourceLimits
from hostplane.types import (
    DesiredStatus, ServiceStatus, ServiceType, new_id, utcnow,
)


def default_service_limits() -> ResourceLimits:
    return ResourceLimits(max_memory_mb=256, max_cpu_percent=50, max_disk_mb=None)


class ServiceCommands(BaseModel):
    start: str
    install: Optional[str] = None
    build: Optional[str] = None
    stop: Optional[str] = None


class CustomCommand(BaseModel):
    name: str
    command: str
    display_name: str = ""
    description: str = ""
    timeout: int = Field(default=300, ge=10, le=3600)
    requires_stop: bool = False
    dangerous: bool = False


class HealthCheckConfig(BaseModel):
    enabled: bool = True
    endpoint: str = "/health"
    timeout_s: float = 5.0


class Service(BaseModel):
    id: str = Field(default_factory=new_id)
    site_id: str
    name: str
    display_name: str = ""
    description: str = ""
    type: ServiceType = ServiceType.CUSTOM
    commands: ServiceCommands
    runtime_binary: Optional[str] = None
    port: int
    environment: dict[str, str] = Field(default_factory=dict)
    status: ServiceStatus = ServiceStatus.STOPPED
    desired_status: DesiredStatus = DesiredStatus.STOPPED
    auto_start: bool = False
    start_priority: int = Field(default=50, ge=1, le=100)
    limits: ResourceLimits = Field(default_factory=default_service_limits)
    custom_commands: list[CustomCommand] = Field(default_factory=list)
    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    unit_name: str = ""
    working_dir: str = ""
    failure_count: int = 0
    last_error: str = ""
    last_state_change: Optional[datetime] = None
    started_at: Optional[datetime] = None
    installed_at: Optional[datetime] = None
    built_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def find_command(self, name: str) -> CustomCommand | None:
        return next((c for c in self.custom_commands if c.name == name), None)


class ServiceDefinition(BaseModel):
    """What a caller supplies to create a service."""

    name: str
    commands: ServiceCommands
    display_name: str = ""
    description: str = ""
    type: ServiceType = ServiceType.CUSTOM
    port: Optional[int] = None
    environment: dict[str, str] = Field(default_factory=dict)
    auto_start: bool = False
    start_priority: int = Field(default=50, ge=1, le=100)
    limits: Optional[ResourceLimits] = None
    custom_commands: list[CustomCommand] = Field(default_factory=list)
    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)


class ServiceUpdate(BaseModel):
    display_name: Optional[str] = None
    description: Optional[str] = None
    commands: Optional[ServiceCommands] = None
    limits: Optional[ResourceLimits] = None
    auto_start: Optional[bool] = None
    start_priority: Optional[int] = Field(default=None, ge=1, le=100)
    health_check: Optional[HealthCheckConfig] = None


class HttpProbe(BaseModel):
    url: str
    healthy: bool
    status_code: Optional[int] = None
    error: str = ""


class HealthReport(BaseModel):
    """Live supervisor view of a service compared with its persisted state."""

    service_id: str
    name: str
    desired: DesiredStatus
    persisted: ServiceStatus
    actual: ServiceStatus
    drift: bool
    active: str = "unknown"
    pid: Optional[int] = None
    uptime_s: Optional[int] = None
    memory_mb: Optional[float] = None
    restarts: int = 0
    http: Optional[HttpProbe] = None
    checked_at: datetime = Field(default_factory=utcnow)


class BulkOutcome(BaseModel):
    service_id: str
    success: bool
    status: Optional[ServiceStatus] = None
    error: str = ""
