"""LocalSupervisor — runs units as child processes of the control plane.

For hosts without systemd (development machines, CI). Each started unit
is a real OS process with a background monitor task that watches
liveness, /proc memory and CPU. Exits nobody asked for are reported on
the EventBus and the ServiceManager turns them into out-of-band status
changes:

  supervisor.unit_exited   clean exit, or killed by a termination signal
                           from outside (SIGKILL, SIGTERM, SIGINT, SIGHUP)
  supervisor.unit_crashed  non-zero exit, any other signal, or killed
                           here for exceeding its memory limit

Memory above 80% of ``memory_mb`` emits ``supervisor.memory_warning``;
above the limit the unit is killed. CPU above ``cpu_percent`` over one
poll interval emits ``supervisor.cpu_exceeded``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal
import time
from dataclasses import dataclass, field

from hostplane.events.bus import EventBus
from hostplane.exceptions import SupervisorError
from hostplane.supervisor.base import Supervisor, UnitSpec, UnitStatus

_logger = logging.getLogger(__name__)

_EXTERNAL_STOP_SIGNALS = {signal.SIGKILL, signal.SIGTERM, signal.SIGINT, signal.SIGHUP}


@dataclass
class _LocalUnit:
    spec: UnitSpec
    proc: asyncio.subprocess.Process | None = None
    started_at: float | None = None
    stopping: bool = False
    restarts: int = 0
    exit_code: int | None = None
    kill_reason: str = ""
    memory_mb: float = 0.0
    cpu_ticks: int = 0
    cpu_percent: float = 0.0
    stderr_lines: list[str] = field(default_factory=list)

    @property
    def crashed(self) -> bool:
        """Whether the last exit counts as a failure."""
        if self.stopping or self.exit_code in (None, 0):
            return False
        if self.kill_reason:
            return True
        return not (self.exit_code < 0 and -self.exit_code in _EXTERNAL_STOP_SIGNALS)


class LocalSupervisor(Supervisor):
    """Child-process supervisor with crash reporting."""

    def __init__(
        self,
        event_bus: EventBus,
        prefix: str = "hostplane",
        stop_grace_seconds: float = 10.0,
        poll_interval: float = 1.0,
    ) -> None:
        super().__init__(prefix)
        self._bus = event_bus
        self._grace = stop_grace_seconds
        self._poll = poll_interval
        self._units: dict[str, _LocalUnit] = {}
        self._monitor_tasks: dict[str, asyncio.Task] = {}
        self._output_tasks: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    def _get(self, name: str) -> _LocalUnit:
        unit = self._units.get(self.check_name(name))
        if unit is None:
            raise SupervisorError(f"Unit {name} is not installed")
        return unit

    @staticmethod
    def _running(unit: _LocalUnit) -> bool:
        return unit.proc is not None and unit.proc.returncode is None

    async def install_unit(self, spec: UnitSpec) -> None:
        self.check_name(spec.name)
        async with self._lock:
            existing = self._units.get(spec.name)
            if existing:
                existing.spec = spec
            else:
                self._units[spec.name] = _LocalUnit(spec=spec)

    async def remove_unit(self, name: str) -> None:
        if name in self._units:
            await self.stop(name, graceful=False)
        async with self._lock:
            self._units.pop(name, None)

    async def start(self, name: str) -> None:
        unit = self._get(name)
        if self._running(unit):
            return
        spec = unit.spec
        env = {**os.environ, **spec.environment, "PORT": str(spec.port)}
        try:
            unit.proc = await asyncio.create_subprocess_exec(
                "bash", "-c", f"exec {spec.exec_start}",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                cwd=spec.working_dir,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            _logger.error("Failed to spawn unit %s (%s): %s", name, shlex.quote(spec.exec_start), e)
            raise SupervisorError(f"Could not spawn {name}") from e

        unit.started_at = time.time()
        unit.stopping = False
        unit.exit_code = None
        unit.kill_reason = ""
        unit.memory_mb = 0.0
        unit.cpu_ticks = 0
        unit.cpu_percent = 0.0
        unit.stderr_lines.clear()
        self._monitor_tasks[name] = asyncio.create_task(self._monitor_loop(name, unit.proc))
        self._output_tasks[name] = asyncio.create_task(self._read_stderr(unit, unit.proc))
        _logger.info("Unit %s started (os pid %d)", name, unit.proc.pid)

    async def _read_stderr(self, unit: _LocalUnit, proc: asyncio.subprocess.Process) -> None:
        if proc.stderr is None:
            return
        while True:
            line = await proc.stderr.readline()
            if not line:
                break
            unit.stderr_lines.append(line.decode("utf-8", errors="replace").rstrip())
            if len(unit.stderr_lines) > 200:
                del unit.stderr_lines[:100]

    async def _monitor_loop(self, name: str, proc: asyncio.subprocess.Process) -> None:
        unit = self._units.get(name)
        if unit is None:
            return
        warned = False
        while proc.returncode is None:
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._poll)
                break
            except asyncio.TimeoutError:
                self._read_proc_stats(unit, proc.pid)
            if unit.kill_reason:
                continue

            spec = unit.spec
            if spec.memory_mb and unit.memory_mb > spec.memory_mb:
                await self._bus.emit("supervisor.memory_exceeded", {
                    "unit": name,
                    "memory_mb": round(unit.memory_mb, 1),
                    "limit_mb": spec.memory_mb,
                }, source="local_supervisor")
                self._kill(unit, proc, reason="memory limit exceeded")
                continue

            if spec.memory_mb and unit.memory_mb > spec.memory_mb * 0.8:
                if not warned:
                    warned = True
                    await self._bus.emit("supervisor.memory_warning", {
                        "unit": name,
                        "memory_mb": round(unit.memory_mb, 1),
                        "limit_mb": spec.memory_mb,
                        "usage_pct": round(unit.memory_mb / spec.memory_mb * 100, 1),
                    }, source="local_supervisor")
            else:
                warned = False

            if spec.cpu_percent and unit.cpu_percent > spec.cpu_percent:
                await self._bus.emit("supervisor.cpu_exceeded", {
                    "unit": name,
                    "cpu_percent": round(unit.cpu_percent, 1),
                    "limit_percent": spec.cpu_percent,
                }, source="local_supervisor")
        await self._handle_exit(name, unit, proc.returncode)

    def _kill(self, unit: _LocalUnit, proc: asyncio.subprocess.Process, reason: str) -> None:
        unit.kill_reason = reason
        _logger.warning("Killing unit %s: %s", unit.spec.name, reason)
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    def _read_proc_stats(self, unit: _LocalUnit, os_pid: int) -> None:
        """Memory and CPU from /proc (Linux only)."""
        try:
            with open(f"/proc/{os_pid}/status") as f:
                for line in f:
                    if line.startswith("VmRSS:"):
                        unit.memory_mb = int(line.split()[1]) / 1024.0
                        break
        except (FileNotFoundError, PermissionError, ValueError):
            pass
        try:
            with open(f"/proc/{os_pid}/stat") as f:
                parts = f.read().split()
            ticks = int(parts[13]) + int(parts[14])
        except (FileNotFoundError, PermissionError, ValueError, IndexError):
            return
        if unit.cpu_ticks:
            seconds = (ticks - unit.cpu_ticks) / os.sysconf("SC_CLK_TCK")
            unit.cpu_percent = max(seconds, 0.0) / self._poll * 100
        unit.cpu_ticks = ticks

    async def _handle_exit(self, name: str, unit: _LocalUnit, exit_code: int) -> None:
        unit.exit_code = exit_code
        if unit.stopping:
            return
        uptime = int(time.time() - (unit.started_at or time.time()))
        if not unit.crashed:
            reason = "exited" if exit_code == 0 else f"killed by {signal.Signals(-exit_code).name}"
            _logger.info("Unit %s %s", name, reason)
            await self._bus.emit("supervisor.unit_exited", {
                "unit": name, "exit_code": exit_code, "reason": reason, "uptime_s": uptime,
            }, source="local_supervisor")
            return
        unit.restarts += 1
        reason = unit.kill_reason or f"exit code {exit_code}"
        _logger.warning("Unit %s crashed: %s", name, reason)
        await self._bus.emit("supervisor.unit_crashed", {
            "unit": name,
            "exit_code": exit_code,
            "reason": reason,
            "uptime_s": uptime,
            "stderr": "\n".join(unit.stderr_lines[-10:])[:500],
        }, source="local_supervisor")

    async def stop(self, name: str, graceful: bool = True) -> None:
        unit = self._get(name)
        proc = unit.proc
        if proc is None or proc.returncode is not None:
            return
        unit.stopping = True
        try:
            if graceful:
                proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=self._grace)
                except asyncio.TimeoutError:
                    proc.kill()
                    await proc.wait()
            else:
                proc.kill()
                await proc.wait()
        except ProcessLookupError:
            pass
        _logger.info("Unit %s stopped", name)

    async def restart(self, name: str) -> None:
        await self.stop(name)
        await self.start(name)

    async def status(self, name: str) -> UnitStatus:
        unit = self._units.get(self.check_name(name))
        status = UnitStatus(name=name)
        if unit is None:
            status.active = "inactive"
            return status
        status.restarts = unit.restarts
        if self._running(unit):
            status.active = "active"
            status.running = True
            status.pid = unit.proc.pid
            status.uptime_s = int(time.time() - (unit.started_at or time.time()))
            status.memory_mb = round(unit.memory_mb, 2)
            status.cpu_s = round(unit.cpu_ticks / os.sysconf("SC_CLK_TCK"), 3)
            return status
        if unit.crashed:
            status.active = "failed"
            status.result = "oom-kill" if unit.kill_reason else "exit-code"
            status.error = unit.kill_reason or f"exit code {unit.exit_code}"
        else:
            status.active = "inactive"
        return status

    async def shutdown(self) -> None:
        """Stop every child and cancel monitor tasks."""
        for name, unit in list(self._units.items()):
            if self._running(unit):
                await self.stop(name)
        for task in [*self._monitor_tasks.values(), *self._output_tasks.values()]:
            task.cancel()
