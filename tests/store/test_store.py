"""Tests for the store and its repositories."""

from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from hostplane.monitoring.models import ServerSample
from hostplane.services.models import Service, ServiceCommands
from hostplane.sites.models import PortRange, Site
from hostplane.store.config import ConfigRepository
from hostplane.store.database import Store, ts
from hostplane.store.services import ServiceRepository
from hostplane.store.sites import SiteRepository
from hostplane.store.stats import StatsRepository
from hostplane.types import ServiceStatus, SiteStatus


@pytest_asyncio.fixture
async def store(tmp_path):
    s = Store(tmp_path / "store.db")
    await s.initialize()
    yield s
    await s.close()


def _site(name="demo", start=4001, status=SiteStatus.ACTIVE) -> Site:
    return Site(name=name, status=status, port_range=PortRange(start=start, end=start + 10))


def test_timestamps_sort_as_strings():
    a = datetime(2026, 1, 1, 12, 0, 0)
    b = a + timedelta(microseconds=1)
    assert ts(a) < ts(b)
    assert len(ts(a)) == len(ts(b))


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(store):
    sites = SiteRepository(store)
    with pytest.raises(RuntimeError):
        async with store.transaction():
            await sites.insert(_site())
            raise RuntimeError("abort")
    assert await sites.get_by_name("demo") is None


@pytest.mark.asyncio
async def test_nested_transaction_joins_outer(store):
    sites = SiteRepository(store)
    with pytest.raises(RuntimeError):
        async with store.transaction():
            await sites.insert(_site("first"))
            async with store.transaction():
                await sites.insert(_site("second", start=4011))
            raise RuntimeError("abort")
    assert await sites.count() == 0


@pytest.mark.asyncio
async def test_reserved_ranges_skip_deleted_sites(store):
    sites = SiteRepository(store)
    await sites.insert(_site("alpha", start=4011))
    await sites.insert(_site("beta", start=4001))
    await sites.insert(_site("gone", start=4021, status=SiteStatus.DELETED))

    ranges = await sites.reserved_ranges()
    assert [r.start for r in ranges] == [4001, 4011]
    assert await sites.count() == 2
    assert len(await sites.list(include_deleted=True)) == 3
    assert {s.name for s in await sites.list()} == {"alpha", "beta"}


@pytest.mark.asyncio
async def test_service_counts_include_every_status(store):
    site = await SiteRepository(store).insert(_site())
    services = ServiceRepository(store)
    for name, port, status in (("web", 4001, ServiceStatus.RUNNING), ("worker", 4002, ServiceStatus.FAILED)):
        await services.insert(Service(
            site_id=site.id, name=name, port=port, status=status,
            commands=ServiceCommands(start="node server.js"),
        ))

    counts = await services.count_by_status(site.id)
    assert counts[ServiceStatus.RUNNING] == 1
    assert counts[ServiceStatus.FAILED] == 1
    assert counts[ServiceStatus.STOPPED] == 0
    assert counts[ServiceStatus.UNKNOWN] == 0
    assert await services.used_ports(site.id) == {4001, 4002}


@pytest.mark.asyncio
async def test_server_history_is_ascending_and_bounded(store):
    stats = StatsRepository(store)
    base = datetime(2026, 3, 1, 12, 0, 0)
    for minute in range(5):
        await stats.add_server(ServerSample(timestamp=base + timedelta(minutes=minute)))

    history = await stats.server_history(base + timedelta(minutes=1), limit=3)
    assert [s.timestamp.minute for s in history] == [2, 3, 4]

    server, site = await stats.prune(base + timedelta(minutes=2))
    assert (server, site) == (2, 0)
    assert (await stats.latest_server()).timestamp.minute == 4


@pytest.mark.asyncio
async def test_monitoring_config_defaults_until_saved(store):
    repo = ConfigRepository(store)
    config = await repo.load()
    assert config.collection_interval == 30

    await repo.save(config.model_copy(update={"collection_interval": 60}))
    assert (await repo.load()).collection_interval == 60
