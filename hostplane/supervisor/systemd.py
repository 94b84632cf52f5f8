"""SystemdSupervisor — drives services as systemd units.

Unit files are rendered from a UnitSpec, installed into the unit
directory, then daemon-reloaded and enabled. Every systemctl call goes
through the injected ProcessRunner. Failures are logged with the full
command and stderr and raised as a generic SupervisorError.
"""

from __future__ import annotations

import logging
import os
import tempfile
import time
from pathlib import Path

from hostplane.exceptions import SupervisorError
from hostplane.runner import CommandResult, ProcessRunner
from hostplane.supervisor.base import Supervisor, UnitSpec, UnitStatus

_logger = logging.getLogger(__name__)

_SHOW_PROPERTIES = (
    "ActiveState,MainPID,ActiveEnterTimestampMonotonic,MemoryCurrent,"
    "CPUUsageNSec,NRestarts,Result"
)


def render_unit(spec: UnitSpec) -> str:
    """Render a systemd service unit for one hosted service."""
    lines = [
        "[Unit]",
        f"Description={spec.description or spec.name}",
        "After=network.target",
        "",
        "[Service]",
        "Type=simple",
    ]
    if spec.user:
        lines += [f"User={spec.user}", f"Group={spec.user}"]
    lines += [
        f"WorkingDirectory={spec.working_dir}",
        f"ExecStart={spec.exec_start}",
    ]
    if spec.exec_stop:
        lines.append(f"ExecStop={spec.exec_stop}")
    lines += [
        f"Restart={spec.restart_policy}",
        f"RestartSec={spec.restart_sec}",
        f"TimeoutStartSec={spec.timeout_start_sec}",
        f"TimeoutStopSec={spec.timeout_stop_sec}",
        "",
        f"Environment=PORT={spec.port}",
    ]
    if spec.env_file:
        lines.append(f"EnvironmentFile=-{spec.env_file}")
    lines += [
        "",
        "NoNewPrivileges=true",
        "PrivateTmp=true",
        "ProtectSystem=strict",
        "ProtectHome=read-only",
    ]
    writable = [spec.working_dir, *spec.writable_paths]
    lines.append("ReadWritePaths=" + " ".join(dict.fromkeys(writable)))
    if spec.memory_mb:
        lines.append(f"MemoryMax={spec.memory_mb}M")
    if spec.cpu_percent:
        lines.append(f"CPUQuota={spec.cpu_percent}%")
    if spec.log_dir:
        short = spec.name.rsplit("-", 1)[-1]
        lines += [
            "",
            f"StandardOutput=append:{spec.log_dir}/{short}.log",
            f"StandardError=append:{spec.log_dir}/{short}-error.log",
        ]
    lines += ["", "[Install]", "WantedBy=multi-user.target", ""]
    return "\n".join(lines)


def parse_show(output: str) -> dict[str, str]:
    props: dict[str, str] = {}
    for line in output.splitlines():
        key, sep, value = line.partition("=")
        if sep and key.strip():
            props[key.strip()] = value.strip()
    return props


def _int(value: str | None) -> int | None:
    if not value or value == "[not set]":
        return None
    try:
        return int(value)
    except ValueError:
        return None


class SystemdSupervisor(Supervisor):
    """Supervisor backend on top of systemctl."""

    def __init__(
        self,
        runner: ProcessRunner,
        unit_dir: str | Path = "/etc/systemd/system",
        prefix: str = "hostplane",
        dry_run: bool = False,
        command_timeout: float = 60.0,
    ) -> None:
        super().__init__(prefix)
        self._runner = runner
        self._unit_dir = Path(unit_dir)
        self._dry_run = dry_run
        self._timeout = command_timeout

    def unit_path(self, name: str) -> Path:
        return self._unit_dir / f"{name}.service"

    async def _privileged(self, *argv: str, check: bool = True) -> CommandResult:
        if self._dry_run:
            _logger.info("[dry-run] %s", " ".join(argv))
            return CommandResult(success=True, exit_code=0)
        result = await self._runner.run_privileged(list(argv), timeout=self._timeout)
        if check and not result.success:
            _logger.error(
                "Supervisor command failed: %s (exit=%s, timed_out=%s) %s",
                " ".join(argv), result.exit_code, result.timed_out,
                (result.stderr or result.error)[:2000],
            )
            raise SupervisorError(f"{argv[0]} {argv[1] if len(argv) > 1 else ''} failed".strip())
        return result

    async def _systemctl(self, *args: str, check: bool = True) -> CommandResult:
        return await self._privileged("systemctl", *args, check=check)

    async def install_unit(self, spec: UnitSpec) -> None:
        self.check_name(spec.name)
        content = render_unit(spec)
        target = self.unit_path(spec.name)
        if self._dry_run:
            _logger.info("[dry-run] would write %s:\n%s", target, content)
        else:
            fd, tmp = tempfile.mkstemp(prefix=f"{spec.name}-", suffix=".service")
            try:
                with os.fdopen(fd, "w") as f:
                    f.write(content)
                await self._privileged("install", "-m", "0644", tmp, str(target))
            finally:
                Path(tmp).unlink(missing_ok=True)
        await self._systemctl("daemon-reload")
        await self._systemctl("enable", f"{spec.name}.service")
        _logger.info("Installed unit %s", spec.name)

    async def remove_unit(self, name: str) -> None:
        self.check_name(name)
        await self._systemctl("stop", f"{name}.service", check=False)
        await self._systemctl("disable", f"{name}.service", check=False)
        await self._privileged("rm", "-f", str(self.unit_path(name)))
        await self._systemctl("daemon-reload")
        _logger.info("Removed unit %s", name)

    async def start(self, name: str) -> None:
        await self._systemctl("start", f"{self.check_name(name)}.service")

    async def stop(self, name: str, graceful: bool = True) -> None:
        self.check_name(name)
        if not graceful:
            await self._systemctl("kill", "--signal=SIGKILL", f"{name}.service", check=False)
        await self._systemctl("stop", f"{name}.service")

    async def restart(self, name: str) -> None:
        await self._systemctl("restart", f"{self.check_name(name)}.service")

    async def status(self, name: str) -> UnitStatus:
        self.check_name(name)
        status = UnitStatus(name=name)
        result = await self._systemctl(
            "show", f"{name}.service", f"--property={_SHOW_PROPERTIES}", check=False
        )
        if not result.success:
            status.error = (result.stderr or result.error)[:500]
            return status

        props = parse_show(result.output)
        status.active = props.get("ActiveState") or "unknown"
        status.running = status.active == "active"

        pid = _int(props.get("MainPID"))
        if pid:
            status.pid = pid
        entered = _int(props.get("ActiveEnterTimestampMonotonic"))
        if status.running and entered:
            # CLOCK_MONOTONIC in microseconds, same clock as time.monotonic()
            status.uptime_s = max(0, int(time.monotonic() - entered / 1_000_000))
        mem = _int(props.get("MemoryCurrent"))
        if mem is not None:
            status.memory_mb = round(mem / (1024 * 1024), 2)
        cpu = _int(props.get("CPUUsageNSec"))
        if cpu is not None:
            status.cpu_s = round(cpu / 1_000_000_000, 3)
        status.restarts = _int(props.get("NRestarts")) or 0
        status.result = props.get("Result", "")
        if status.result and status.result != "success":
            status.error = status.result
        return status
