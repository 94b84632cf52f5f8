"""SiteManager — tenant workspaces and the services they own.

Whole-site actions fan out to every service in ``start_priority`` order
(reversed for stop). One service failing never stops the fan-out: the
result lists what succeeded and what failed.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from hostplane.allocator import LimitPolicy, PortAllocator, validate_limits
from hostplane.config import HostplaneSettings
from hostplane.events.bus import EventBus
from hostplane.exceptions import (
    HostplaneError, NotFoundError, PartialFailureError, ValidationError,
)
from hostplane.services import validation
from hostplane.services.manager import ServiceManager
from hostplane.services.models import Service
from hostplane.sites.models import (
    Domain, ServiceFailure, Site, SiteActionResult, SiteDefinition, SiteDeleteResult,
    SiteUpdate,
)
from hostplane.sites.provisioner import SiteProvisioner
from hostplane.store.database import Store
from hostplane.store.services import ServiceRepository
from hostplane.store.sites import SiteRepository
from hostplane.types import ServiceStatus, SiteStatus

_logger = logging.getLogger(__name__)

# Collaborators outside the core (databases, file-transfer accounts) that
# must be torn down with a site. Raising marks the cascade as failed.
CleanupHook = Callable[[Site], Awaitable[None]]


class SiteManager:
    def __init__(
        self,
        store: Store,
        allocator: PortAllocator,
        services: ServiceManager,
        provisioner: SiteProvisioner,
        event_bus: EventBus,
        settings: HostplaneSettings,
    ) -> None:
        self._store = store
        self._sites = SiteRepository(store)
        self._service_repo = ServiceRepository(store)
        self._allocator = allocator
        self._service_manager = services
        self._provisioner = provisioner
        self._bus = event_bus
        self._policy = LimitPolicy.from_settings(settings)
        self._cleanup_hooks: list[tuple[str, CleanupHook]] = []

    def add_cleanup_hook(self, name: str, hook: CleanupHook) -> None:
        self._cleanup_hooks.append((name, hook))

    async def get(self, site_id: str) -> Site:
        site = await self._sites.get(site_id)
        if site is None or site.status == SiteStatus.DELETED:
            raise NotFoundError(f"Site {site_id} not found")
        return site

    async def list_sites(
        self, owner_id: str | None = None, status: SiteStatus | None = None
    ) -> list[Site]:
        return await self._sites.list(owner_id=owner_id, status=status)

    async def get_info(self, site_id: str) -> dict:
        """The site plus each of its services with live supervisor status."""
        site = await self.get(site_id)
        services = []
        for service in await self._service_repo.list_for_site(site.id):
            _, unit = await self._service_manager.get_status(service.id)
            services.append({"service": service, "unit": unit})
        return {"site": site, "services": services}

    # ── Create / update / delete ──

    async def create_site(self, definition: SiteDefinition) -> Site:
        validation.validate_site_name(definition.name)
        validation.validate_env(definition.environment)
        limits = definition.limits
        if limits is not None:
            validate_limits(limits, self._policy)

        async with self._store.transaction():
            if await self._sites.get_by_name(definition.name):
                raise ValidationError(f"Site '{definition.name}' already exists")
            port_range = await self._allocator.allocate_range(definition.port_width)
            site = Site(
                name=definition.name,
                display_name=definition.display_name or definition.name,
                description=definition.description,
                owner_id=definition.owner_id,
                status=SiteStatus.CREATING,
                port_range=port_range,
                environment={k: v for k, v in definition.environment.items() if v is not None},
                root=self._provisioner.site_root(definition.name),
                linux_user=self._provisioner.account_name(definition.name),
            )
            if limits is not None:
                site.limits = limits
            await self._sites.insert(site)

        try:
            await self._provisioner.provision(site)
        except HostplaneError as e:
            site.status = SiteStatus.ERROR
            site.error_message = str(e)
            await self._sites.save(site)
            await self._bus.emit("site.error", {"site_id": site.id, "error": str(e)}, source="site_manager")
            raise

        site.status = SiteStatus.ACTIVE
        await self._sites.save(site)
        _logger.info(
            "Site %s created with ports %d-%d",
            site.name, port_range.start, port_range.end - 1,
        )
        await self._bus.emit("site.created", {
            "site_id": site.id, "name": site.name,
            "port_start": port_range.start, "port_end": port_range.end,
        }, source="site_manager")
        return site

    async def update(self, site_id: str, update: SiteUpdate) -> Site:
        site = await self.get(site_id)
        for key, value in update.model_dump(exclude_none=True).items():
            setattr(site, key, value)
        return await self._sites.save(site)

    async def delete_site(self, site_id: str, force: bool = False) -> SiteDeleteResult:
        """Cascade to services and external collaborators, then remove the root.

        Without ``force`` any failed nested deletion leaves the site in
        ``error`` (the other services stay deleted) and raises
        PartialFailureError carrying the result.
        """
        site = await self.get(site_id)
        site.status = SiteStatus.DELETING
        await self._sites.save(site)
        result = SiteDeleteResult(site_id=site.id)

        for service in await self._service_repo.list_for_site(site.id):
            try:
                await self._service_manager.delete(service.id, force=force)
                result.deleted_services.append(service.name)
            except HostplaneError as e:
                _logger.error("Deleting service %s of site %s failed: %s", service.name, site.name, e)
                result.failed.append(ServiceFailure(name=service.name, error=str(e)))

        for name, hook in self._cleanup_hooks:
            try:
                await hook(site)
            except Exception as e:
                _logger.error("Cleanup %s for site %s failed: %s", name, site.name, e)
                result.failed.append(ServiceFailure(name=name, error=str(e)))

        if result.failed and not force:
            site.status = SiteStatus.ERROR
            site.error_message = "; ".join(f"{f.name}: {f.error}" for f in result.failed)[:500]
            await self._sites.save(site)
            await self._bus.emit("site.error", {
                "site_id": site.id, "error": site.error_message,
            }, source="site_manager")
            raise PartialFailureError(
                f"Site {site.name} could not be fully deleted", result=result
            )

        await self._provisioner.remove_account(site)
        result.root_removed = self._provisioner.remove_root(site)
        site.status = SiteStatus.DELETED
        site.domains = []
        await self._sites.save(site)
        _logger.info("Site %s deleted", site.name)
        await self._bus.emit("site.deleted", {
            "site_id": site.id, "name": site.name, "force": force,
        }, source="site_manager")
        return result

    # ── Fan-out ──

    async def start_site(self, site_id: str) -> SiteActionResult:
        site = await self.get(site_id)
        services = await self._service_repo.list_for_site(site.id)
        result = await self._fan_out(services, "start")
        await self._after_fan_out(site, result, SiteStatus.ACTIVE, "site.started")
        return result

    async def stop_site(self, site_id: str) -> SiteActionResult:
        site = await self.get(site_id)
        services = list(reversed(await self._service_repo.list_for_site(site.id)))
        result = await self._fan_out(services, "stop")
        await self._after_fan_out(site, result, SiteStatus.STOPPED, "site.stopped")
        return result

    async def restart_site(self, site_id: str) -> SiteActionResult:
        site = await self.get(site_id)
        services = await self._service_repo.list_for_site(site.id)
        result = await self._fan_out(services, "restart")
        await self._after_fan_out(site, result, SiteStatus.ACTIVE, "site.started")
        return result

    async def _fan_out(self, services: list[Service], action: str) -> SiteActionResult:
        result = SiteActionResult(action=action)
        for service in services:
            # A failed service only leaves that state through an explicit start
            call = action
            if action == "restart" and service.status == ServiceStatus.FAILED:
                call = "start"
            try:
                await getattr(self._service_manager, call)(service.id)
                result.succeeded.append(service.name)
            except HostplaneError as e:
                result.failed.append(ServiceFailure(name=service.name, error=str(e)))
        return result

    async def _after_fan_out(
        self, site: Site, result: SiteActionResult, status: SiteStatus, topic: str
    ) -> None:
        if result.ok and site.status in (SiteStatus.ACTIVE, SiteStatus.STOPPED, SiteStatus.ERROR):
            site.status = status
            site.error_message = ""
            await self._sites.save(site)
        if result.failed:
            _logger.warning(
                "Site %s %s: %d succeeded, %d failed",
                site.name, result.action, len(result.succeeded), len(result.failed),
            )
        await self._bus.emit(topic, {
            "site_id": site.id, **result.as_payload(),
        }, source="site_manager")

    # ── Metadata ──

    async def add_domain(self, site_id: str, domain: str, is_primary: bool = False) -> Site:
        domain = validation.validate_domain(domain)
        site = await self.get(site_id)
        owner = await self._sites.find_by_domain(domain)
        if owner is not None:
            if owner.id != site.id:
                raise ValidationError(f"Domain '{domain}' is already used by another site")
            raise ValidationError(f"Domain '{domain}' is already attached to this site")
        if is_primary or not site.domains:
            for d in site.domains:
                d.is_primary = False
            is_primary = True
        site.domains.append(Domain(domain=domain, is_primary=is_primary))
        return await self._sites.save(site)

    async def remove_domain(self, site_id: str, domain: str) -> Site:
        domain = domain.strip().lower()
        site = await self.get(site_id)
        remaining = [d for d in site.domains if d.domain != domain]
        if len(remaining) == len(site.domains):
            raise NotFoundError(f"Domain '{domain}' is not attached to site {site.name}")
        if remaining and not any(d.is_primary for d in remaining):
            remaining[0].is_primary = True
        site.domains = remaining
        return await self._sites.save(site)

    async def update_environment(self, site_id: str, env: dict[str, Optional[str]]) -> Site:
        """Merge site variables (None removes a key) and rewrite every service's .env."""
        validation.validate_env(env)
        site = await self.get(site_id)
        for key, value in env.items():
            if value is None:
                site.environment.pop(key, None)
            else:
                site.environment[key] = str(value)
        await self._sites.save(site)
        for service in await self._service_repo.list_for_site(site.id):
            try:
                await self._provisioner.write_env(site, service)
            except HostplaneError as e:
                _logger.warning("Rewriting .env for %s failed: %s", service.name, e)
        return site
