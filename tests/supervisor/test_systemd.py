"""Tests for the systemd backend — unit rendering and systemctl parsing."""

import time

import pytest

from hostplane.exceptions import SupervisorError, ValidationError
from hostplane.runner import CommandResult
from hostplane.supervisor.base import UnitSpec
from hostplane.supervisor.systemd import SystemdSupervisor, parse_show, render_unit


def spec(**overrides) -> UnitSpec:
    fields = dict(
        name="hostplane-demo-web",
        description="hostplane service demo/web",
        exec_start="/usr/bin/node server.js",
        working_dir="/var/www/sites/demo/services/web",
        user="site_demo",
        port=4001,
        env_file="/var/www/sites/demo/services/web/.env",
        log_dir="/var/www/sites/demo/logs",
        writable_paths=["/var/www/sites/demo/logs", "/var/www/sites/demo/data"],
        memory_mb=256,
        cpu_percent=50,
    )
    fields.update(overrides)
    return UnitSpec(**fields)


def test_render_unit_carries_limits_and_isolation():
    unit = render_unit(spec())

    assert "User=site_demo" in unit
    assert "ExecStart=/usr/bin/node server.js" in unit
    assert "Environment=PORT=4001" in unit
    assert "EnvironmentFile=-/var/www/sites/demo/services/web/.env" in unit
    assert "MemoryMax=256M" in unit
    assert "CPUQuota=50%" in unit
    assert "NoNewPrivileges=true" in unit
    assert "ProtectSystem=strict" in unit
    assert (
        "ReadWritePaths=/var/www/sites/demo/services/web "
        "/var/www/sites/demo/logs /var/www/sites/demo/data"
    ) in unit
    assert "StandardOutput=append:/var/www/sites/demo/logs/web.log" in unit
    assert unit.rstrip().endswith("WantedBy=multi-user.target")


def test_render_unit_without_user_or_limits():
    unit = render_unit(spec(user=None, memory_mb=None, cpu_percent=None, exec_stop="/usr/bin/env npm stop"))
    assert "User=" not in unit
    assert "MemoryMax" not in unit
    assert "ExecStop=/usr/bin/env npm stop" in unit


def test_parse_show():
    props = parse_show("ActiveState=active\nMainPID=4242\nResult=success\nbogus line\n")
    assert props == {"ActiveState": "active", "MainPID": "4242", "Result": "success"}


@pytest.mark.asyncio
async def test_status_reads_systemctl_show(runner):
    entered_us = int((time.monotonic() - 120) * 1_000_000)
    runner.script("systemctl show", CommandResult(success=True, exit_code=0, output=(
        "ActiveState=active\n"
        "MainPID=4242\n"
        f"ActiveEnterTimestampMonotonic={entered_us}\n"
        "MemoryCurrent=52428800\n"
        "CPUUsageNSec=1500000000\n"
        "NRestarts=2\n"
        "Result=success\n"
    )))
    supervisor = SystemdSupervisor(runner)

    status = await supervisor.status("hostplane-demo-web")

    assert status.running
    assert status.pid == 4242
    assert status.memory_mb == 50.0
    assert status.cpu_s == 1.5
    assert status.restarts == 2
    assert 119 <= status.uptime_s <= 125
    assert status.error == ""


@pytest.mark.asyncio
async def test_status_reports_failed_unit(runner):
    runner.script("systemctl show", CommandResult(success=True, exit_code=0, output=(
        "ActiveState=failed\nMainPID=0\nMemoryCurrent=[not set]\nResult=exit-code\n"
    )))
    status = await SystemdSupervisor(runner).status("hostplane-demo-web")
    assert not status.running
    assert status.active == "failed"
    assert status.pid is None
    assert status.memory_mb is None
    assert status.error == "exit-code"


@pytest.mark.asyncio
async def test_lifecycle_commands_and_failures(runner, tmp_path):
    supervisor = SystemdSupervisor(runner, unit_dir=tmp_path)

    await supervisor.install_unit(spec())
    await supervisor.start("hostplane-demo-web")
    await supervisor.stop("hostplane-demo-web", graceful=False)

    commands = runner.commands()
    assert commands[0].startswith("install -m 0644")
    assert commands[0].endswith(str(tmp_path / "hostplane-demo-web.service"))
    assert "systemctl daemon-reload" in commands
    assert "systemctl enable hostplane-demo-web.service" in commands
    assert "systemctl start hostplane-demo-web.service" in commands
    assert commands[-2] == "systemctl kill --signal=SIGKILL hostplane-demo-web.service"
    assert commands[-1] == "systemctl stop hostplane-demo-web.service"

    runner.script("systemctl restart", CommandResult(success=False, exit_code=1, stderr="Job failed"))
    with pytest.raises(SupervisorError):
        await supervisor.restart("hostplane-demo-web")


@pytest.mark.asyncio
async def test_unit_names_are_checked(runner):
    supervisor = SystemdSupervisor(runner)
    with pytest.raises(ValidationError):
        await supervisor.start("../../etc/passwd")
    with pytest.raises(ValidationError):
        await supervisor.status("other-demo-web")


@pytest.mark.asyncio
async def test_dry_run_runs_nothing(runner, tmp_path):
    supervisor = SystemdSupervisor(runner, unit_dir=tmp_path, dry_run=True)
    await supervisor.install_unit(spec())
    await supervisor.start("hostplane-demo-web")
    assert runner.calls == []
