"""Shared test fixtures — fakes for the runner, the supervisor and the sampler."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from hostplane.config import HostplaneSettings
from hostplane.context import HostplaneContext
from hostplane.exceptions import SupervisorError
from hostplane.monitoring.models import (
    CpuStats, DiskStats, HostMetrics, MemoryStats, SiteUsage,
)
from hostplane.runner import CommandResult, ProcessRunner
from hostplane.supervisor.base import Supervisor, UnitSpec, UnitStatus


class FakeRunner(ProcessRunner):
    """Runner that records commands and returns scripted results. Spawns nothing."""

    def __init__(self) -> None:
        super().__init__(use_sudo=False)
        self.calls: list[dict] = []
        self._scripted: list[tuple[str, CommandResult]] = []
        self.default = CommandResult(success=True, exit_code=0, output="ok")

    def script(self, fragment: str, result: CommandResult) -> None:
        """Any command containing ``fragment`` returns ``result``."""
        self._scripted.append((fragment, result))

    async def run(self, command, *, cwd=None, env=None, timeout=300.0, user=None, shell=True):
        text = command if isinstance(command, str) else " ".join(command)
        self.calls.append({"command": text, "cwd": cwd, "env": env, "timeout": timeout, "user": user})
        for fragment, result in self._scripted:
            if fragment in text:
                return result
        return self.default

    def commands(self) -> list[str]:
        return [c["command"] for c in self.calls]


class FakeSupervisor(Supervisor):
    """In-memory supervisor. ``kill`` simulates a process dying behind our back."""

    def __init__(self) -> None:
        super().__init__("hostplane")
        self.units: dict[str, UnitSpec] = {}
        self.running: dict[str, int] = {}
        self.failed: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.fail_on: set[str] = set()
        self.fail_units: set[str] = set()
        self.ignore_start = False
        self.delay = 0.01
        self._next_pid = 1000

    def _maybe_fail(self, action: str, name: str) -> None:
        if action in self.fail_on or name in self.fail_units:
            raise SupervisorError(f"{action} {name} rejected")

    def _spawn(self, name: str) -> None:
        self._next_pid += 1
        self.running[name] = self._next_pid
        self.failed.discard(name)

    def count(self, action: str, name: str | None = None) -> int:
        return sum(1 for a, n in self.calls if a == action and (name is None or n == name))

    def kill(self, name: str, crashed: bool = False) -> None:
        self.running.pop(name, None)
        if crashed:
            self.failed.add(name)

    async def install_unit(self, spec: UnitSpec) -> None:
        self.calls.append(("install", spec.name))
        self._maybe_fail("install", spec.name)
        self.units[spec.name] = spec

    async def remove_unit(self, name: str) -> None:
        self.calls.append(("remove", name))
        self._maybe_fail("remove", name)
        self.units.pop(name, None)
        self.running.pop(name, None)

    async def start(self, name: str) -> None:
        self.calls.append(("start", name))
        self._maybe_fail("start", name)
        await asyncio.sleep(self.delay)
        if not self.ignore_start:
            self._spawn(name)

    async def stop(self, name: str, graceful: bool = True) -> None:
        self.calls.append(("stop", name))
        self._maybe_fail("stop", name)
        await asyncio.sleep(self.delay)
        self.running.pop(name, None)
        self.failed.discard(name)

    async def restart(self, name: str) -> None:
        self.calls.append(("restart", name))
        self._maybe_fail("restart", name)
        await asyncio.sleep(self.delay)
        self._spawn(name)

    async def status(self, name: str) -> UnitStatus:
        if name in self.running:
            return UnitStatus(name=name, active="active", running=True, pid=self.running[name], uptime_s=1)
        if name in self.failed:
            return UnitStatus(name=name, active="failed", result="signal", error="signal")
        return UnitStatus(name=name, active="inactive")


class FakeSampler:
    """Scripted host and site metrics."""

    def __init__(self) -> None:
        self.host = HostMetrics(cpu=CpuStats(percent=10.0, cores=4))
        self.site = SiteUsage(cpu_percent=1.0, memory_bytes=64 * 1024 * 1024)
        self.host_calls = 0
        self.site_calls = 0
        self.delay = 0.0
        self.error: Exception | None = None

    def set_host(self, cpu: float = 10.0, memory: float = 10.0, disk: float = 10.0) -> None:
        self.host = HostMetrics(
            cpu=CpuStats(percent=cpu, cores=4),
            memory=MemoryStats(total=8 << 30, percent=memory),
            disk=DiskStats(total=100 << 30, percent=disk),
        )

    async def sample_host(self) -> HostMetrics:
        self.host_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.host

    async def sample_site(self, site) -> SiteUsage:
        self.site_calls += 1
        return self.site


class Clock:
    """Settable clock handed to the collector and the alert engine."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def settings(tmp_path):
    return HostplaneSettings(
        workspace_dir=tmp_path,
        db_path=tmp_path / "hostplane.db",
        sites_dir=tmp_path / "sites",
        unit_dir=tmp_path / "units",
        supervisor="local",
        use_sudo=False,
        port_pool_start=4001,
        port_pool_end=5000,
        site_port_width=10,
        start_confirm_timeout=0.2,
        confirm_poll_interval=0.01,
        stop_grace_seconds=1,
    )


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def supervisor():
    return FakeSupervisor()


@pytest.fixture
def sampler():
    return FakeSampler()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def make_ctx(settings, runner, supervisor, sampler, clock):
    def _make() -> HostplaneContext:
        return HostplaneContext(
            settings,
            runner=runner,
            supervisor=supervisor,
            sampler=sampler,
            clock=clock,
            manage_accounts=False,
        )
    return _make


@pytest_asyncio.fixture
async def ctx(make_ctx):
    context = make_ctx()
    await context.start()
    yield context
    await context.stop()
