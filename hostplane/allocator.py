"""Port and resource allocator.

Sites get a contiguous block from the global pool, services get a port
inside their site's block. Both picks are first-fit scans over what is
already persisted, so callers must run allocate-then-insert inside one
``store.transaction()``; the transaction lock keeps two concurrent
creators from picking the same block.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel

from hostplane.exceptions import ResourceExhaustedError, ValidationError
from hostplane.sites.models import PortRange, ResourceLimits, Site
from hostplane.store.services import ServiceRepository
from hostplane.store.sites import SiteRepository

_logger = logging.getLogger(__name__)


class LimitPolicy(BaseModel):
    min_memory_mb: int = 64
    max_memory_mb: int = 8192
    min_cpu_percent: int = 1
    max_cpu_percent: int = 400
    min_disk_mb: int = 100
    max_disk_mb: int = 102400

    @classmethod
    def from_settings(cls, settings) -> LimitPolicy:
        return cls(**{name: getattr(settings, name) for name in cls.model_fields})


def validate_limits(
    request: ResourceLimits,
    policy: LimitPolicy,
    ceiling: ResourceLimits | None = None,
) -> ResourceLimits:
    """Reject limits outside the policy bounds, or above an owning site's limits."""
    if not policy.min_memory_mb <= request.max_memory_mb <= policy.max_memory_mb:
        raise ValidationError(
            f"max_memory_mb must be between {policy.min_memory_mb} and {policy.max_memory_mb}"
        )
    if not policy.min_cpu_percent <= request.max_cpu_percent <= policy.max_cpu_percent:
        raise ValidationError(
            f"max_cpu_percent must be between {policy.min_cpu_percent} "
            f"and {policy.max_cpu_percent}"
        )
    if request.max_disk_mb is not None and not (
        policy.min_disk_mb <= request.max_disk_mb <= policy.max_disk_mb
    ):
        raise ValidationError(
            f"max_disk_mb must be between {policy.min_disk_mb} and {policy.max_disk_mb}"
        )
    if ceiling is not None:
        if request.max_memory_mb > ceiling.max_memory_mb:
            raise ValidationError(
                f"max_memory_mb {request.max_memory_mb} exceeds the site limit "
                f"of {ceiling.max_memory_mb}"
            )
        if request.max_cpu_percent > ceiling.max_cpu_percent:
            raise ValidationError(
                f"max_cpu_percent {request.max_cpu_percent} exceeds the site limit "
                f"of {ceiling.max_cpu_percent}"
            )
    return request


class PortAllocator:
    """Assigns non-conflicting port blocks and ports."""

    def __init__(
        self,
        sites: SiteRepository,
        services: ServiceRepository,
        pool_start: int = 10000,
        pool_end: int = 20000,
        default_width: int = 10,
    ) -> None:
        if pool_end <= pool_start:
            raise ValueError("port pool end must be above its start")
        self._sites = sites
        self._services = services
        self.pool = PortRange(start=pool_start, end=pool_end)
        self.default_width = default_width

    async def allocate_range(self, width: int | None = None) -> PortRange:
        """First free block of ``width`` ports that overlaps no live site."""
        width = width or self.default_width
        if width < 1:
            raise ValidationError("port range width must be at least 1")
        if width > self.pool.width:
            raise ValidationError(f"port range width {width} exceeds the pool size")

        candidate = self.pool.start
        for taken in await self._sites.reserved_ranges():
            if taken.end <= candidate:
                continue
            if candidate + width <= taken.start:
                break
            candidate = max(candidate, taken.end)

        if candidate + width > self.pool.end:
            raise ResourceExhaustedError(
                f"No free block of {width} ports left in {self.pool.start}-{self.pool.end - 1}"
            )
        block = PortRange(start=candidate, end=candidate + width)
        _logger.debug("Allocated port range %d-%d", block.start, block.end - 1)
        return block

    async def allocate_port(self, site: Site, requested: int | None = None) -> int:
        """A port in the site's range that no service of the site uses yet."""
        used = await self._services.used_ports(site.id)
        if requested is not None:
            if not site.port_range.contains(requested):
                raise ValidationError(
                    f"Port {requested} is outside the site range "
                    f"{site.port_range.start}-{site.port_range.end - 1}"
                )
            if requested in used:
                raise ValidationError(f"Port {requested} is already used in site {site.name}")
            return requested

        for port in site.port_range.ports():
            if port not in used:
                return port
        raise ResourceExhaustedError(f"Site {site.name} has no free port left")
