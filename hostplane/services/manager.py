"""ServiceManager — turns service definitions into supervised processes.

Lifecycle actions on one service are serialized by a per-service lock.
A start (or stop) on a service that is already there, both in the store
and in the supervisor's live view, returns without touching the
supervisor, so a duplicate concurrent start waits for the first and then
observes ``running``. Status is persisted only after the supervisor
confirms the new state; an unconfirmed transition leaves ``unknown``,
a rejected one leaves ``failed``.

Usage:
    manager = ServiceManager(store, allocator, supervisor, runner, provisioner, bus, settings)
    service = await manager.create_service(site.id, ServiceDefinition(
        name="web", type=ServiceType.NODE, commands=ServiceCommands(start="node server.js"),
    ))
    await manager.start(service.id)
    report = await manager.check_health(service.id)
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Callable, Optional

import httpx

from hostplane.allocator import LimitPolicy, PortAllocator, validate_limits
from hostplane.config import HostplaneSettings
from hostplane.events.bus import Event, EventBus
from hostplane.exceptions import (
    HostplaneError, NotFoundError, PermissionDeniedError, SupervisorError, ValidationError,
)
from hostplane.runner import CommandResult, ProcessRunner
from hostplane.services import validation
from hostplane.services.models import (
    BulkOutcome, CustomCommand, HealthReport, HttpProbe, Service, ServiceDefinition,
    ServiceUpdate, default_service_limits,
)
from hostplane.services.state_machine import check_action, check_transition
from hostplane.sites.models import Site
from hostplane.sites.provisioner import SiteProvisioner, merged_env
from hostplane.store.database import Store
from hostplane.store.services import ServiceRepository
from hostplane.store.sites import SiteRepository
from hostplane.supervisor.base import Supervisor, UnitSpec, UnitStatus
from hostplane.types import DesiredStatus, ServiceStatus, SiteStatus, utcnow

_logger = logging.getLogger(__name__)

_WRITABLE_SITE_STATUSES = {SiteStatus.ACTIVE, SiteStatus.STOPPED, SiteStatus.ERROR}

_ACTION_TOPICS = {"start": "service.started", "stop": "service.stopped", "restart": "service.restarted"}


def live_status(unit: UnitStatus) -> ServiceStatus:
    """Map a supervisor view onto the service status vocabulary."""
    if unit.running:
        return ServiceStatus.RUNNING
    if unit.active == "failed":
        return ServiceStatus.FAILED
    if unit.active in ("inactive", "deactivating"):
        return ServiceStatus.STOPPED
    return ServiceStatus.UNKNOWN


class ServiceManager:
    """Create, drive and inspect services."""

    def __init__(
        self,
        store: Store,
        allocator: PortAllocator,
        supervisor: Supervisor,
        runner: ProcessRunner,
        provisioner: SiteProvisioner,
        event_bus: EventBus,
        settings: HostplaneSettings,
        http_client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
    ) -> None:
        self._store = store
        self._sites = SiteRepository(store)
        self._services = ServiceRepository(store)
        self._allocator = allocator
        self._supervisor = supervisor
        self._runner = runner
        self._provisioner = provisioner
        self._bus = event_bus
        self._settings = settings
        self._policy = LimitPolicy.from_settings(settings)
        self._http = http_client_factory
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        event_bus.subscribe("supervisor.*", self._on_supervisor_event)

    # ── Lookup ──

    async def get(self, service_id: str) -> Service:
        service = await self._services.get(service_id)
        if service is None:
            raise NotFoundError(f"Service {service_id} not found")
        return service

    async def _site_for(self, service: Service) -> Site:
        site = await self._sites.get(service.site_id)
        if site is None:
            raise NotFoundError(f"Site {service.site_id} not found")
        return site

    async def list_for_site(self, site_id: str) -> list[Service]:
        return await self._services.list_for_site(site_id)

    # ── Create / update / delete ──

    async def create_service(self, site_id: str, definition: ServiceDefinition) -> Service:
        validation.validate_service_name(definition.name)
        commands = definition.commands.model_copy()
        commands.start = validation.validate_start_command(commands.start)
        for extra in ("install", "build", "stop"):
            value = getattr(commands, extra)
            if value:
                setattr(commands, extra, validation.validate_shell_command(value))
        validation.validate_env(definition.environment)
        for cmd in definition.custom_commands:
            validation.validate_custom_command(cmd.name, cmd.command)
        if len({c.name for c in definition.custom_commands}) != len(definition.custom_commands):
            raise ValidationError("Custom command names must be unique")

        site = await self._sites.get(site_id)
        if site is None or site.status == SiteStatus.DELETED:
            raise NotFoundError(f"Site {site_id} not found")
        if site.status not in _WRITABLE_SITE_STATUSES:
            raise ValidationError(f"Cannot create service: site is {site.status.value}")

        limits = definition.limits or default_service_limits()
        validate_limits(limits, self._policy, ceiling=site.limits)

        runtime = validation.runtime_for(definition.type)
        if not commands.install and runtime.default_install:
            commands.install = runtime.default_install

        async with self._store.transaction():
            if await self._services.get_by_name(site.id, definition.name):
                raise ValidationError(f"Service '{definition.name}' already exists in site {site.name}")
            port = await self._allocator.allocate_port(site, definition.port)
            service = Service(
                site_id=site.id,
                name=definition.name,
                display_name=definition.display_name or definition.name,
                description=definition.description,
                type=definition.type,
                commands=commands,
                runtime_binary=runtime.binary,
                port=port,
                environment={k: v for k, v in definition.environment.items() if v is not None},
                auto_start=definition.auto_start,
                start_priority=definition.start_priority,
                limits=limits,
                custom_commands=definition.custom_commands,
                health_check=definition.health_check,
                unit_name=self._supervisor.unit_name(site.name, definition.name),
                working_dir=self._provisioner.service_dir(site, definition.name),
            )
            await self._services.insert(service)

        try:
            await self._provisioner.create_service_dir(site, service)
            await self._provisioner.write_env(site, service)
            await self._supervisor.install_unit(self.unit_spec(site, service))
        except HostplaneError:
            await self._services.delete(service.id)
            raise

        _logger.info("Service %s/%s created on port %d", site.name, service.name, port)
        await self._bus.emit("service.created", {
            "service_id": service.id, "site_id": site.id, "name": service.name, "port": port,
        }, source="service_manager")

        if service.auto_start:
            return await self.start(service.id)
        return service

    def exec_start(self, service: Service) -> str:
        command = service.commands.start
        head, _, rest = command.partition(" ")
        if head.startswith("./"):
            return f"{service.working_dir}/{command[2:]}"
        if service.runtime_binary and head == service.runtime_binary.rsplit("/", 1)[-1]:
            return f"{service.runtime_binary} {rest}".strip()
        return f"/usr/bin/env {command}"

    def unit_spec(self, site: Site, service: Service) -> UnitSpec:
        return UnitSpec(
            name=service.unit_name,
            description=f"hostplane service {site.name}/{service.name} ({service.display_name})",
            exec_start=self.exec_start(service),
            exec_stop=f"/usr/bin/env {service.commands.stop}" if service.commands.stop else None,
            working_dir=service.working_dir,
            user=site.linux_user or None,
            port=service.port,
            environment=merged_env(site, service),
            env_file=self._provisioner.env_path(site, service),
            log_dir=site.logs_dir,
            writable_paths=[site.logs_dir, site.data_dir, site.tmp_dir],
            memory_mb=service.limits.max_memory_mb,
            cpu_percent=service.limits.max_cpu_percent,
            timeout_start_sec=int(self._settings.start_confirm_timeout),
            timeout_stop_sec=int(self._settings.stop_grace_seconds),
        )

    async def update(self, service_id: str, update: ServiceUpdate) -> Service:
        async with self._locks[service_id]:
            service = await self.get(service_id)
            site = await self._site_for(service)
            if update.commands is not None:
                commands = update.commands.model_copy()
                commands.start = validation.validate_start_command(commands.start)
                for extra in ("install", "build", "stop"):
                    value = getattr(commands, extra)
                    if value:
                        setattr(commands, extra, validation.validate_shell_command(value))
                update = update.model_copy(update={"commands": commands})
            if update.limits is not None:
                validate_limits(update.limits, self._policy, ceiling=site.limits)

            changes = update.model_dump(exclude_none=True)
            rerender = "commands" in changes or "limits" in changes
            for key in changes:
                setattr(service, key, getattr(update, key))
            await self._services.save(service)

            if rerender:
                was_running = (await self._supervisor.status(service.unit_name)).running
                await self._supervisor.install_unit(self.unit_spec(site, service))
                if was_running:
                    service = await self._transition(service, "restart")
        return service

    async def set_environment(self, service_id: str, env: dict[str, Optional[str]]) -> Service:
        """Merge variables into the service environment; a None value removes the key."""
        validation.validate_env(env)
        async with self._locks[service_id]:
            service = await self.get(service_id)
            site = await self._site_for(service)
            for key, value in env.items():
                if value is None:
                    service.environment.pop(key, None)
                else:
                    service.environment[key] = str(value)
            await self._services.save(service)
            await self._provisioner.write_env(site, service)
        return service

    async def delete(self, service_id: str, force: bool = False) -> None:
        """Stop the process, remove its unit and the record. ``force`` skips the grace period."""
        async with self._locks[service_id]:
            service = await self.get(service_id)
            site = await self._sites.get(service.site_id)
            live = await self._supervisor.status(service.unit_name)
            if live.running:
                await self._supervisor.stop(service.unit_name, graceful=not force)
            await self._supervisor.remove_unit(service.unit_name)
            if force and site is not None:
                self._provisioner.remove_service_dir(site, service)
            await self._services.delete(service.id)
        self._locks.pop(service_id, None)
        _logger.info("Service %s deleted (force=%s)", service.name, force)
        await self._bus.emit("service.deleted", {
            "service_id": service.id, "site_id": service.site_id, "name": service.name,
        }, source="service_manager")

    # ── Lifecycle ──

    async def start(self, service_id: str) -> Service:
        return await self._act(service_id, "start")

    async def stop(self, service_id: str) -> Service:
        return await self._act(service_id, "stop")

    async def restart(self, service_id: str) -> Service:
        return await self._act(service_id, "restart")

    async def _act(self, service_id: str, action: str) -> Service:
        async with self._locks[service_id]:
            service = await self.get(service_id)
            check_action(service.name, service.status, action)
            if action != "restart":
                want = ServiceStatus.RUNNING if action == "start" else ServiceStatus.STOPPED
                if service.status == want:
                    live = await self._supervisor.status(service.unit_name)
                    if live.running == (want == ServiceStatus.RUNNING):
                        return service
            return await self._transition(service, action)

    async def _transition(self, service: Service, action: str) -> Service:
        """Issue the supervisor command and persist only what it confirms. Caller holds the lock."""
        want_running = action != "stop"
        try:
            if action == "start":
                await self._supervisor.start(service.unit_name)
            elif action == "stop":
                await self._supervisor.stop(service.unit_name)
            else:
                await self._supervisor.restart(service.unit_name)
        except SupervisorError as e:
            await self._record_failure(
                service, f"{action} failed: {e}",
                ServiceStatus.FAILED if want_running else ServiceStatus.UNKNOWN,
            )
            raise

        unit = await self._confirm(service.unit_name, want_running)
        if unit is None:
            await self._record_failure(
                service,
                f"{action} not confirmed within {self._settings.start_confirm_timeout:g}s",
                ServiceStatus.UNKNOWN,
            )
            raise SupervisorError(f"Service {service.name} did not confirm {action}")
        if want_running and not unit.running:
            await self._record_failure(service, f"{action} failed: {unit.error or unit.active}", ServiceStatus.FAILED)
            raise SupervisorError(f"Service {service.name} failed to {action}")

        target = ServiceStatus.RUNNING if want_running else ServiceStatus.STOPPED
        check_transition(service.name, service.status, target)
        now = utcnow()
        service.status = target
        service.desired_status = DesiredStatus.RUNNING if want_running else DesiredStatus.STOPPED
        service.last_state_change = now
        service.started_at = now if want_running else None
        service.last_error = ""
        await self._services.save(service)
        _logger.info("Service %s %s", service.name, target.value)
        await self._bus.emit(_ACTION_TOPICS[action], {
            "service_id": service.id, "site_id": service.site_id, "name": service.name,
            "pid": unit.pid,
        }, source="service_manager")
        return service

    async def _confirm(self, unit_name: str, want_running: bool) -> UnitStatus | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.start_confirm_timeout
        while True:
            unit = await self._supervisor.status(unit_name)
            if unit.running == want_running:
                return unit
            if want_running and unit.active == "failed":
                return unit
            if loop.time() >= deadline:
                return None
            await asyncio.sleep(self._settings.confirm_poll_interval)

    async def _record_failure(self, service: Service, message: str, status: ServiceStatus) -> None:
        _logger.error("Service %s: %s", service.name, message)
        service.status = status
        service.last_error = message[:500]
        service.last_state_change = utcnow()
        if status == ServiceStatus.FAILED:
            service.failure_count += 1
        await self._services.save(service)
        if status == ServiceStatus.FAILED:
            await self._bus.emit("service.failed", {
                "service_id": service.id, "site_id": service.site_id,
                "name": service.name, "error": service.last_error,
            }, source="service_manager")

    async def _on_supervisor_event(self, event: Event) -> None:
        """Out-of-band exits reported by the supervisor backend."""
        if event.topic not in ("supervisor.unit_crashed", "supervisor.unit_exited"):
            return
        unit_name = event.data.get("unit")
        match = next(
            (s for s in await self._services.list_all() if s.unit_name == unit_name), None
        )
        if match is None:
            return
        async with self._locks[match.id]:
            service = await self._services.get(match.id)
            if service is None or service.status != ServiceStatus.RUNNING:
                return
            if event.topic == "supervisor.unit_crashed":
                reason = event.data.get("reason") or f"exit code {event.data.get('exit_code')}"
                await self._record_failure(service, f"crashed: {reason}", ServiceStatus.FAILED)
            elif event.topic == "supervisor.unit_exited":
                service.status = ServiceStatus.STOPPED
                service.last_state_change = utcnow()
                service.started_at = None
                await self._services.save(service)

    async def bulk_action(self, service_ids: list[str], action: str) -> dict:
        if action not in _ACTION_TOPICS:
            raise ValidationError(f"Unknown action: {action}")
        outcomes: list[BulkOutcome] = []
        for service_id in service_ids:
            try:
                service = await self._act(service_id, action)
                outcomes.append(BulkOutcome(service_id=service_id, success=True, status=service.status))
            except HostplaneError as e:
                outcomes.append(BulkOutcome(service_id=service_id, success=False, error=str(e)))
        succeeded = sum(1 for o in outcomes if o.success)
        return {
            "results": outcomes,
            "summary": {"total": len(outcomes), "succeeded": succeeded, "failed": len(outcomes) - succeeded},
        }

    # ── Status & health ──

    async def get_status(self, service_id: str) -> tuple[Service, UnitStatus]:
        service = await self.get(service_id)
        return service, await self._supervisor.status(service.unit_name)

    async def check_health(self, service_id: str) -> HealthReport:
        """Live supervisor state compared with what is persisted. Never mutates state."""
        service = await self.get(service_id)
        unit = await self._supervisor.status(service.unit_name)
        actual = live_status(unit)
        wants_running = service.desired_status == DesiredStatus.RUNNING
        drift = wants_running != (actual == ServiceStatus.RUNNING) or service.status != actual

        probe = None
        if service.health_check.enabled and unit.running:
            probe = await self._probe(service)

        return HealthReport(
            service_id=service.id,
            name=service.name,
            desired=service.desired_status,
            persisted=service.status,
            actual=actual,
            drift=drift,
            active=unit.active,
            pid=unit.pid,
            uptime_s=unit.uptime_s,
            memory_mb=unit.memory_mb,
            restarts=unit.restarts,
            http=probe,
        )

    async def _probe(self, service: Service) -> HttpProbe:
        url = f"http://127.0.0.1:{service.port}{service.health_check.endpoint}"
        try:
            async with self._http(timeout=service.health_check.timeout_s) as client:
                response = await client.get(url)
            return HttpProbe(
                url=url,
                healthy=200 <= response.status_code < 400,
                status_code=response.status_code,
            )
        except httpx.HTTPError as e:
            return HttpProbe(url=url, healthy=False, error=str(e) or type(e).__name__)

    # ── Install / build ──

    async def install(self, service_id: str) -> CommandResult:
        return await self._run_phase(service_id, "install", self._settings.install_timeout)

    async def build(self, service_id: str) -> CommandResult:
        return await self._run_phase(service_id, "build", self._settings.build_timeout)

    async def _run_phase(self, service_id: str, phase: str, timeout: float) -> CommandResult:
        service = await self.get(service_id)
        command = getattr(service.commands, phase)
        if not command:
            return CommandResult(success=True, exit_code=0, output=f"No {phase} command defined")
        site = await self._site_for(service)
        result = await self._runner.run(
            command,
            cwd=service.working_dir,
            env=merged_env(site, service),
            timeout=timeout,
            user=site.linux_user or None,
        )
        if result.success:
            async with self._locks[service_id]:
                service = await self.get(service_id)
                if phase == "install":
                    service.installed_at = utcnow()
                else:
                    service.built_at = utcnow()
                await self._services.save(service)
        else:
            _logger.warning(
                "Service %s %s failed (exit=%s, timed_out=%s)",
                service.name, phase, result.exit_code, result.timed_out,
            )
        await self._bus.emit("service.command_executed", {
            "service_id": service.id, "command": phase, "success": result.success,
            "exit_code": result.exit_code, "timed_out": result.timed_out,
        }, source="service_manager")
        return result

    # ── Custom commands ──

    async def list_commands(self, service_id: str) -> list[CustomCommand]:
        return (await self.get(service_id)).custom_commands

    async def add_command(self, service_id: str, command: CustomCommand) -> Service:
        validation.validate_custom_command(command.name, command.command)
        async with self._locks[service_id]:
            service = await self.get(service_id)
            if service.find_command(command.name):
                raise ValidationError(f"Command '{command.name}' already exists")
            if not command.display_name:
                command = command.model_copy(update={"display_name": command.name})
            service.custom_commands.append(command)
            await self._services.save(service)
        return service

    async def remove_command(self, service_id: str, name: str) -> Service:
        async with self._locks[service_id]:
            service = await self.get(service_id)
            if service.find_command(name) is None:
                raise NotFoundError(f"Command '{name}' not found")
            service.custom_commands = [c for c in service.custom_commands if c.name != name]
            await self._services.save(service)
        return service

    async def execute_command(
        self, service_id: str, name: str, privileged: bool = False
    ) -> CommandResult:
        """Run a custom command in the service's working directory.

        Dangerous commands need a privileged caller. Commands marked
        ``requires_stop`` stop the service first and leave it stopped.
        A timeout or non-zero exit comes back as a result.
        """
        service = await self.get(service_id)
        command = service.find_command(name)
        if command is None:
            raise NotFoundError(f"Command '{name}' not found")
        validation.validate_custom_command(command.name, command.command)
        if command.dangerous and not privileged:
            raise PermissionDeniedError(f"Command '{name}' is marked dangerous and requires admin")
        site = await self._site_for(service)

        async with self._locks[service_id]:
            service = await self.get(service_id)
            if command.requires_stop and (await self._supervisor.status(service.unit_name)).running:
                service = await self._transition(service, "stop")
            result = await self._runner.run(
                command.command,
                cwd=service.working_dir,
                env=merged_env(site, service),
                timeout=command.timeout,
                user=site.linux_user or None,
            )

        _logger.info(
            "Custom command %s on %s: success=%s exit=%s",
            name, service.name, result.success, result.exit_code,
        )
        await self._bus.emit("service.command_executed", {
            "service_id": service.id, "command": name, "success": result.success,
            "exit_code": result.exit_code, "timed_out": result.timed_out,
        }, source="service_manager")
        return result
