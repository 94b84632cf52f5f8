"""StatsCollector — the autonomous sampling loop.

Every ``collection_interval`` seconds a tick samples the host, persists
a server sample, evaluates alert thresholds, samples each active site
and rotates old samples. A tick that finds the previous one still
running is skipped and logged. A tick that fails is logged and the loop
carries on; nothing here raises to a caller.

Fresh reads (``get_server_stats`` / ``get_site_stats``) return the last
in-memory sample while it is inside the freshness window, and otherwise
take a new one without persisting it.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Protocol

import pydantic
import structlog

from hostplane.events.bus import Event, EventBus
from hostplane.exceptions import NotFoundError, ValidationError
from hostplane.monitoring.alerts import AlertEngine
from hostplane.monitoring.models import (
    Alert, AlertFilter, HostMetrics, MonitoringConfig, ServerSample, ServerTotals,
    ServiceCounts, SiteSample, SiteUsage,
)
from hostplane.services.manager import ServiceManager
from hostplane.sites.models import Site
from hostplane.store.config import ConfigRepository
from hostplane.store.database import Store
from hostplane.store.services import ServiceRepository
from hostplane.store.sites import SiteRepository
from hostplane.store.stats import StatsRepository
from hostplane.types import AlertSeverity, AlertType, ServiceStatus, SiteStatus, utcnow

logger = structlog.get_logger()

RESOLVED_ALERT_RETENTION = timedelta(days=7)


class Sampler(Protocol):
    async def sample_host(self) -> HostMetrics: ...

    async def sample_site(self, site: Site) -> SiteUsage: ...


class StatsCollector:
    """Owns the collection timer, the fresh-read cache and the stats queries."""

    def __init__(
        self,
        store: Store,
        sampler: Sampler,
        alerts: AlertEngine,
        services: ServiceManager,
        event_bus: EventBus,
        clock: Callable[[], datetime] = utcnow,
        user_counter: Optional[Callable[[], Awaitable[int]]] = None,
    ) -> None:
        self._stats = StatsRepository(store)
        self._sites = SiteRepository(store)
        self._service_repo = ServiceRepository(store)
        self._config_repo = ConfigRepository(store)
        self._sampler = sampler
        self.alerts = alerts
        self._services = services
        self._bus = event_bus
        self._clock = clock
        self._user_counter = user_counter
        self.config = MonitoringConfig()
        self._collecting = False
        self._running = False
        self._ticker: asyncio.Task | None = None
        self._ticks: set[asyncio.Task] = set()
        self._last_server: ServerSample | None = None
        self._last_site: dict[str, SiteSample] = {}
        event_bus.subscribe("service.failed", self._on_service_failed)

    async def initialize(self) -> MonitoringConfig:
        self.config = await self._config_repo.load()
        self.alerts.configure(self.config)
        logger.info(
            "stats_collector_initialized",
            interval=self.config.collection_interval,
            alerts_enabled=self.config.alerts_enabled,
        )
        return self.config

    # ── Timer ──

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_collecting(self) -> bool:
        return self._collecting

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._ticker = asyncio.create_task(self._run_loop())
        logger.info("stats_collection_started", interval=self.config.collection_interval)

    async def stop(self) -> None:
        self._running = False
        await self._cancel_ticker()
        for task in list(self._ticks):
            task.cancel()
        if self._ticks:
            await asyncio.gather(*self._ticks, return_exceptions=True)
        logger.info("stats_collection_stopped")

    async def _cancel_ticker(self) -> None:
        if self._ticker and not self._ticker.done():
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
        self._ticker = None

    async def _run_loop(self) -> None:
        """Fire a tick immediately and then every interval, without waiting for ticks."""
        while self._running:
            task = asyncio.create_task(self.collect_once())
            self._ticks.add(task)
            task.add_done_callback(self._ticks.discard)
            try:
                await asyncio.sleep(self.config.collection_interval)
            except asyncio.CancelledError:
                break

    # ── Collection ──

    async def collect_once(self) -> ServerSample | None:
        """One collection cycle. Returns None when skipped or failed."""
        if self._collecting:
            logger.warning("stats_collection_skipped", reason="previous collection still running")
            await self._bus.emit("stats.collection_skipped", {}, source="stats_collector")
            return None

        self._collecting = True
        started = asyncio.get_running_loop().time()
        try:
            sample = await self._take_server_sample()
            await self._stats.add_server(sample)
            self._last_server = sample
            await self._bus.emit("stats.server", sample.model_dump(mode="json"), source="stats_collector")

            if self.config.alerts_enabled:
                await self.alerts.evaluate(sample)
            if self.config.site_stats_enabled:
                await self._collect_sites()
            await self.rotate()

            duration = asyncio.get_running_loop().time() - started
            if duration > 5:
                logger.info("stats_collection_slow", duration_s=round(duration, 2))
            return sample
        except Exception as e:
            logger.error("stats_collection_failed", error=str(e))
            await self._bus.emit("stats.collection_failed", {"error": str(e)}, source="stats_collector")
            return None
        finally:
            self._collecting = False

    async def _take_server_sample(self) -> ServerSample:
        metrics = await self._sampler.sample_host()
        counts = await self._service_repo.count_by_status()
        users = await self._user_counter() if self._user_counter else 0
        totals = ServerTotals(
            sites=await self._sites.count(),
            services=sum(counts.values()),
            users=users,
            services_running=counts[ServiceStatus.RUNNING],
            services_stopped=counts[ServiceStatus.STOPPED] + counts[ServiceStatus.FAILED],
        )
        return ServerSample(**metrics.model_dump(), timestamp=self._clock(), totals=totals)

    async def _take_site_sample(self, site: Site) -> SiteSample:
        usage = await self._sampler.sample_site(site)
        counts = await self._service_repo.count_by_status(site.id)
        return SiteSample(
            site_id=site.id,
            timestamp=self._clock(),
            usage=usage,
            services=ServiceCounts(
                total=sum(counts.values()),
                running=counts[ServiceStatus.RUNNING],
                stopped=counts[ServiceStatus.STOPPED],
                failed=counts[ServiceStatus.FAILED],
            ),
        )

    async def _collect_sites(self) -> None:
        for site in await self._sites.list(status=SiteStatus.ACTIVE):
            try:
                sample = await self._take_site_sample(site)
                await self._stats.add_site(sample)
                self._last_site[site.id] = sample
                await self._bus.emit("stats.site", sample.model_dump(mode="json"), source="stats_collector")
            except Exception as e:
                logger.error("site_stats_failed", site=site.name, error=str(e))

    async def rotate(self) -> tuple[int, int]:
        cutoff = self._clock() - timedelta(hours=self.config.retention_hours)
        server, site = await self._stats.prune(cutoff)
        alerts = await self.alerts.prune_resolved(RESOLVED_ALERT_RETENTION)
        if server or site or alerts:
            logger.debug("stats_rotated", server=server, site=site, alerts=alerts)
        return server, site

    async def _on_service_failed(self, event: Event) -> None:
        if not self.config.alerts_enabled:
            return
        name = event.data.get("name", "?")
        await self.alerts.create_alert(
            AlertType.SERVICE_DOWN.value,
            AlertSeverity.CRITICAL,
            f"Service {name} failed: {event.data.get('error', '')}",
            {"error": event.data.get("error", "")},
            site_id=event.data.get("site_id"),
            service_id=event.data.get("service_id"),
        )

    # ── Reads ──

    def _fresh(self, sample: ServerSample | SiteSample | None, max_age: float) -> bool:
        if sample is None:
            return False
        return (self._clock() - sample.timestamp).total_seconds() < max_age

    async def get_server_stats(self) -> ServerSample:
        if self._fresh(self._last_server, self.config.server_cache_seconds):
            return self._last_server
        sample = await self._take_server_sample()
        self._last_server = sample
        return sample

    async def get_server_history(self, hours: float = 1, limit: int = 60) -> list[ServerSample]:
        since = self._window(hours, limit)
        return await self._stats.server_history(since, limit)

    async def _site(self, site_id: str) -> Site:
        site = await self._sites.get(site_id)
        if site is None or site.status == SiteStatus.DELETED:
            raise NotFoundError(f"Site {site_id} not found")
        return site

    async def get_site_stats(self, site_id: str) -> SiteSample:
        site = await self._site(site_id)
        cached = self._last_site.get(site.id)
        if self._fresh(cached, self.config.site_cache_seconds):
            return cached
        sample = await self._take_site_sample(site)
        self._last_site[site.id] = sample
        return sample

    async def get_site_history(self, site_id: str, hours: float = 1, limit: int = 60) -> list[SiteSample]:
        site = await self._site(site_id)
        since = self._window(hours, limit)
        return await self._stats.site_history(site.id, since, limit)

    def _window(self, hours: float, limit: int) -> datetime:
        if hours <= 0 or hours > 24 * 7:
            raise ValidationError("hours must be within (0, 168]")
        if not 1 <= limit <= 1000:
            raise ValidationError("limit must be between 1 and 1000")
        return self._clock() - timedelta(hours=hours)

    async def get_all_sites_stats(self) -> list[dict[str, Any]]:
        results = []
        for site in await self._sites.list():
            entry: dict[str, Any] = {"site_id": site.id, "name": site.name, "status": site.status}
            try:
                entry["stats"] = await self.get_site_stats(site.id)
            except Exception as e:
                logger.warning("site_stats_failed", site=site.name, error=str(e))
                entry["error"] = str(e)
            results.append(entry)
        return results

    async def get_site_services_stats(self, site_id: str) -> list[dict[str, Any]]:
        """Each service of the site with its live supervisor view."""
        site = await self._site(site_id)
        results = []
        for service in await self._services.list_for_site(site.id):
            _, unit = await self._services.get_status(service.id)
            results.append({
                "id": service.id,
                "name": service.name,
                "display_name": service.display_name,
                "type": service.type,
                "port": service.port,
                "status": service.status,
                "desired_status": service.desired_status,
                "limits": service.limits,
                "unit": unit,
            })
        return results

    # ── Alerts ──

    async def list_alerts(self, flt: AlertFilter | None = None) -> list[Alert]:
        return await self.alerts.list_alerts(flt)

    async def acknowledge_alert(self, alert_id: str, user_id: str | None = None) -> Alert:
        return await self.alerts.acknowledge(alert_id, user_id)

    async def resolve_alert(self, alert_id: str) -> Alert:
        return await self.alerts.resolve(alert_id)

    # ── Configuration ──

    def get_config(self) -> MonitoringConfig:
        return self.config

    async def update_config(self, changes: dict[str, Any]) -> MonitoringConfig:
        """Persist new settings; they apply from the next tick. An interval change restarts the timer."""
        current = self.config.model_dump()
        merged = {**current, **changes, "updated_at": self._clock()}
        if isinstance(changes.get("thresholds"), dict):
            thresholds = dict(current["thresholds"])
            for metric, levels in changes["thresholds"].items():
                if isinstance(levels, dict) and metric in thresholds:
                    levels = {**thresholds[metric], **levels}
                thresholds[metric] = levels
            merged["thresholds"] = thresholds
        try:
            config = MonitoringConfig.model_validate(merged)
        except pydantic.ValidationError as e:
            raise ValidationError(str(e)) from e

        interval_changed = config.collection_interval != self.config.collection_interval
        await self._config_repo.save(config)
        self.config = config
        self.alerts.configure(config)

        if interval_changed and self._running:
            await self._cancel_ticker()
            self._ticker = asyncio.create_task(self._run_loop())
            logger.info("stats_collection_rescheduled", interval=config.collection_interval)

        await self._bus.emit("monitoring.config_updated", config.model_dump(mode="json"), source="stats_collector")
        return config
