"""Site data model — tenant workspaces, their port ranges and domains."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from hostplane.types import SiteStatus, new_id, utcnow


class PortRange(BaseModel):
    """Half-open port block ``[start, end)``."""

    start: int
    end: int

    def contains(self, port: int) -> bool:
        return self.start <= port < self.end

    def overlaps(self, other: PortRange) -> bool:
        return self.start < other.end and other.start < self.end

    @property
    def width(self) -> int:
        return self.end - self.start

    def ports(self) -> range:
        return range(self.start, self.end)


class ResourceLimits(BaseModel):
    max_memory_mb: int = 512
    max_cpu_percent: int = 100
    max_disk_mb: Optional[int] = 1024


class Domain(BaseModel):
    domain: str
    is_primary: bool = False
    ssl_enabled: bool = False
    verified: bool = False
    added_at: datetime = Field(default_factory=utcnow)


class Site(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    display_name: str = ""
    description: str = ""
    owner_id: str = ""
    status: SiteStatus = SiteStatus.PENDING
    error_message: str = ""
    port_range: PortRange
    domains: list[Domain] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)
    limits: ResourceLimits = Field(default_factory=ResourceLimits)
    root: str = ""
    linux_user: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def services_dir(self) -> str:
        return f"{self.root}/services"

    @property
    def logs_dir(self) -> str:
        return f"{self.root}/logs"

    @property
    def data_dir(self) -> str:
        return f"{self.root}/data"

    @property
    def tmp_dir(self) -> str:
        return f"{self.root}/tmp"

    def primary_domain(self) -> str | None:
        return next((d.domain for d in self.domains if d.is_primary), None)


class SiteDefinition(BaseModel):
    """What a caller supplies to create a site."""

    name: str
    display_name: str = ""
    description: str = ""
    owner_id: str = ""
    limits: Optional[ResourceLimits] = None
    environment: dict[str, str] = Field(default_factory=dict)
    port_width: Optional[int] = None


class SiteUpdate(BaseModel):
    display_name: Optional[str] = None
    description: Optional[str] = None


class ServiceFailure(BaseModel):
    name: str
    error: str


class SiteActionResult(BaseModel):
    """Outcome of a whole-site fan-out. Never collapsed to one boolean."""

    action: str
    succeeded: list[str] = Field(default_factory=list)
    failed: list[ServiceFailure] = Field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failed) and bool(self.succeeded)

    @property
    def ok(self) -> bool:
        return not self.failed

    def as_payload(self) -> dict:
        key = {"start": "started", "stop": "stopped", "restart": "restarted"}[self.action]
        return {
            key: list(self.succeeded),
            "failed": [f.model_dump() for f in self.failed],
        }


class SiteDeleteResult(BaseModel):
    site_id: str
    deleted_services: list[str] = Field(default_factory=list)
    failed: list[ServiceFailure] = Field(default_factory=list)
    root_removed: bool = False
