"""Tests for the site manager — provisioning, fan-out, deletion and metadata."""

from pathlib import Path

import pytest

from hostplane.events.bus import Event
from hostplane.exceptions import NotFoundError, PartialFailureError, ValidationError
from hostplane.services.models import HealthCheckConfig, ServiceCommands, ServiceDefinition
from hostplane.sites.models import SiteDefinition, SiteUpdate
from hostplane.types import ServiceStatus, SiteStatus


def service_definition(name: str, priority: int = 50) -> ServiceDefinition:
    return ServiceDefinition(
        name=name,
        commands=ServiceCommands(start="node server.js"),
        start_priority=priority,
        health_check=HealthCheckConfig(enabled=False),
    )


async def site_with_services(ctx, *names_and_priorities):
    site = await ctx.sites.create_site(SiteDefinition(name="demo"))
    services = [
        await ctx.services.create_service(site.id, service_definition(name, priority))
        for name, priority in names_and_priorities
    ]
    return site, services


@pytest.mark.asyncio
async def test_create_site_provisions_directories(ctx, settings):
    events = []

    async def on_created(event: Event):
        events.append(event)

    ctx.event_bus.subscribe("site.created", on_created)
    site = await ctx.sites.create_site(SiteDefinition(name="demo", owner_id="u1"))

    assert site.status == SiteStatus.ACTIVE
    assert site.linux_user == "site_demo"
    root = Path(settings.sites_dir) / "demo"
    for sub in ("services", "logs", "data", "tmp"):
        assert (root / sub).is_dir()
    assert events[0].data["port_start"] == 4001


@pytest.mark.asyncio
async def test_duplicate_and_invalid_names(ctx):
    await ctx.sites.create_site(SiteDefinition(name="demo"))
    with pytest.raises(ValidationError, match="already exists"):
        await ctx.sites.create_site(SiteDefinition(name="demo"))
    with pytest.raises(ValidationError):
        await ctx.sites.create_site(SiteDefinition(name="Bad Name"))


@pytest.mark.asyncio
async def test_list_get_and_update(ctx):
    site = await ctx.sites.create_site(SiteDefinition(name="demo", owner_id="u1"))
    await ctx.sites.create_site(SiteDefinition(name="other", owner_id="u2"))

    assert [s.name for s in await ctx.sites.list_sites(owner_id="u1")] == ["demo"]
    updated = await ctx.sites.update(site.id, SiteUpdate(display_name="Demo Site"))
    assert updated.display_name == "Demo Site"
    assert (await ctx.sites.get(site.id)).display_name == "Demo Site"
    with pytest.raises(NotFoundError):
        await ctx.sites.get("missing")


@pytest.mark.asyncio
async def test_start_follows_priority_and_stop_reverses_it(ctx, supervisor):
    site, _ = await site_with_services(ctx, ("web", 50), ("db", 10), ("worker", 90))

    result = await ctx.sites.start_site(site.id)
    assert result.ok
    assert result.succeeded == ["db", "web", "worker"]

    result = await ctx.sites.stop_site(site.id)
    assert result.succeeded == ["worker", "web", "db"]
    assert (await ctx.sites.get(site.id)).status == SiteStatus.STOPPED


@pytest.mark.asyncio
async def test_fan_out_continues_past_failures(ctx, supervisor):
    site, services = await site_with_services(ctx, ("web", 50), ("db", 10))
    supervisor.fail_units.add(services[1].unit_name)

    result = await ctx.sites.start_site(site.id)
    assert result.partial
    assert result.succeeded == ["web"]
    assert [f.name for f in result.failed] == ["db"]
    assert result.as_payload()["started"] == ["web"]

    # A failed service comes back through start when the site restarts
    supervisor.fail_units.clear()
    result = await ctx.sites.restart_site(site.id)
    assert result.ok
    assert (await ctx.services.get(services[1].id)).status == ServiceStatus.RUNNING


@pytest.mark.asyncio
async def test_delete_removes_services_and_root(ctx, settings, supervisor):
    site, services = await site_with_services(ctx, ("web", 50), ("api", 60))
    await ctx.services.start(services[0].id)

    result = await ctx.sites.delete_site(site.id)

    assert sorted(result.deleted_services) == ["api", "web"]
    assert result.root_removed
    assert not (Path(settings.sites_dir) / "demo").exists()
    assert supervisor.units == {}
    with pytest.raises(NotFoundError):
        await ctx.sites.get(site.id)
    # The name is free again
    assert (await ctx.sites.create_site(SiteDefinition(name="demo"))).status == SiteStatus.ACTIVE


@pytest.mark.asyncio
async def test_partial_delete_leaves_site_in_error(ctx, supervisor):
    site, services = await site_with_services(ctx, ("web", 50), ("api", 60))
    supervisor.fail_units.add(services[1].unit_name)

    with pytest.raises(PartialFailureError) as exc:
        await ctx.sites.delete_site(site.id)

    result = exc.value.result
    assert result.deleted_services == ["web"]
    assert [f.name for f in result.failed] == ["api"]
    failed_site = await ctx.sites.get(site.id)
    assert failed_site.status == SiteStatus.ERROR
    assert "api" in failed_site.error_message
    assert [s.name for s in await ctx.services.list_for_site(site.id)] == ["api"]


@pytest.mark.asyncio
async def test_forced_delete_finishes_despite_failures(ctx, supervisor):
    site, services = await site_with_services(ctx, ("web", 50))
    supervisor.fail_units.add(services[0].unit_name)

    result = await ctx.sites.delete_site(site.id, force=True)
    assert [f.name for f in result.failed] == ["web"]
    assert (await ctx.sites.list_sites()) == []


@pytest.mark.asyncio
async def test_cleanup_hook_failure_is_reported(ctx):
    site = await ctx.sites.create_site(SiteDefinition(name="demo"))
    cleaned = []

    async def drop_databases(s):
        cleaned.append(s.name)

    async def drop_ftp(s):
        raise RuntimeError("ftp daemon unreachable")

    ctx.sites.add_cleanup_hook("databases", drop_databases)
    ctx.sites.add_cleanup_hook("ftp", drop_ftp)

    with pytest.raises(PartialFailureError):
        await ctx.sites.delete_site(site.id)
    assert cleaned == ["demo"]


@pytest.mark.asyncio
async def test_domains(ctx):
    site = await ctx.sites.create_site(SiteDefinition(name="demo"))
    other = await ctx.sites.create_site(SiteDefinition(name="other"))

    site = await ctx.sites.add_domain(site.id, "Example.com")
    assert site.primary_domain() == "example.com"
    site = await ctx.sites.add_domain(site.id, "www.example.com")
    assert site.primary_domain() == "example.com"
    site = await ctx.sites.add_domain(site.id, "shop.example.com", is_primary=True)
    assert site.primary_domain() == "shop.example.com"
    assert sum(d.is_primary for d in site.domains) == 1

    with pytest.raises(ValidationError, match="another site"):
        await ctx.sites.add_domain(other.id, "example.com")

    site = await ctx.sites.remove_domain(site.id, "shop.example.com")
    assert site.primary_domain() == "example.com"
    with pytest.raises(NotFoundError):
        await ctx.sites.remove_domain(site.id, "shop.example.com")


@pytest.mark.asyncio
async def test_site_environment_reaches_service_env_files(ctx):
    site, services = await site_with_services(ctx, ("web", 50))
    await ctx.sites.update_environment(site.id, {"APP_URL": "https://example.com"})

    content = (Path(services[0].working_dir) / ".env").read_text()
    assert "APP_URL=https://example.com" in content
    assert "PORT=4001" in content

    site = await ctx.sites.update_environment(site.id, {"APP_URL": None})
    assert site.environment == {}
