"""HostplaneContext — the explicitly constructed runtime handle.

Wires the store, event bus, runner, supervisor backend, allocator,
managers and collector together. Nothing here is a module-level
singleton; the CLI and the HTTP app each build one and pass it down.

Usage:
    async with HostplaneContext(HostplaneSettings()) as ctx:
        site = await ctx.sites.create_site(SiteDefinition(name="demo"))
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from hostplane.allocator import PortAllocator
from hostplane.config import HostplaneSettings
from hostplane.events.bus import EventBus
from hostplane.monitoring.alerts import AlertEngine
from hostplane.monitoring.collector import Sampler, StatsCollector
from hostplane.monitoring.sampler import SystemSampler
from hostplane.runner import ProcessRunner
from hostplane.services.manager import ServiceManager
from hostplane.sites.manager import SiteManager
from hostplane.sites.provisioner import SiteProvisioner
from hostplane.store.database import Store
from hostplane.store.services import ServiceRepository
from hostplane.store.sites import SiteRepository
from hostplane.supervisor.base import Supervisor
from hostplane.supervisor.local import LocalSupervisor
from hostplane.supervisor.systemd import SystemdSupervisor
from hostplane.types import utcnow

_logger = logging.getLogger(__name__)


def build_supervisor(
    settings: HostplaneSettings, runner: ProcessRunner, event_bus: EventBus
) -> Supervisor:
    if settings.supervisor == "systemd":
        return SystemdSupervisor(
            runner,
            unit_dir=settings.unit_dir,
            prefix=settings.unit_prefix,
            dry_run=settings.dry_run,
        )
    if settings.supervisor == "local":
        return LocalSupervisor(
            event_bus,
            prefix=settings.unit_prefix,
            stop_grace_seconds=settings.stop_grace_seconds,
        )
    raise ValueError(f"Unknown supervisor backend: {settings.supervisor}")


class HostplaneContext:
    """Holds every subsystem instance for one control plane process."""

    def __init__(
        self,
        settings: HostplaneSettings,
        runner: Optional[ProcessRunner] = None,
        supervisor: Optional[Supervisor] = None,
        sampler: Optional[Sampler] = None,
        clock: Callable[[], datetime] = utcnow,
        manage_accounts: bool = True,
    ) -> None:
        self.settings = settings
        self.store = Store(settings.db_path)
        self.event_bus = EventBus()
        self.runner = runner or ProcessRunner(
            use_sudo=settings.use_sudo, max_output_bytes=settings.max_output_bytes
        )
        self.supervisor = supervisor or build_supervisor(settings, self.runner, self.event_bus)
        self.allocator = PortAllocator(
            SiteRepository(self.store),
            ServiceRepository(self.store),
            pool_start=settings.port_pool_start,
            pool_end=settings.port_pool_end,
            default_width=settings.site_port_width,
        )
        self.provisioner = SiteProvisioner(
            self.runner,
            sites_dir=settings.sites_dir,
            dry_run=settings.dry_run,
            manage_accounts=manage_accounts,
        )
        self.services = ServiceManager(
            self.store, self.allocator, self.supervisor, self.runner,
            self.provisioner, self.event_bus, settings,
        )
        self.sites = SiteManager(
            self.store, self.allocator, self.services, self.provisioner,
            self.event_bus, settings,
        )
        self.alerts = AlertEngine(self.store, self.event_bus, clock=clock)
        self.collector = StatsCollector(
            self.store,
            sampler or SystemSampler(),
            self.alerts,
            self.services,
            self.event_bus,
            clock=clock,
        )
        self._started = False

    async def start(self, run_collector: bool = False) -> None:
        if self._started:
            return
        await self.store.initialize()
        await self.collector.initialize()
        if run_collector:
            self.collector.start()
        self._started = True
        _logger.info("hostplane context started (supervisor=%s)", type(self.supervisor).__name__)

    async def stop(self) -> None:
        if not self._started:
            return
        await self.collector.stop()
        await self.supervisor.shutdown()
        await self.store.close()
        self._started = False

    async def __aenter__(self) -> HostplaneContext:
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()
