"""Supervisor interface shared by the systemd and local backends."""

from __future__ import annotations

import abc
import re
from typing import Optional

from pydantic import BaseModel, Field

from hostplane.exceptions import ValidationError


class UnitSpec(BaseModel):
    """Everything a backend needs to run one service."""

    name: str
    description: str = ""
    exec_start: str
    exec_stop: Optional[str] = None
    working_dir: str
    user: Optional[str] = None
    port: int
    environment: dict[str, str] = Field(default_factory=dict)
    env_file: Optional[str] = None
    log_dir: Optional[str] = None
    writable_paths: list[str] = Field(default_factory=list)
    memory_mb: Optional[int] = None
    cpu_percent: Optional[int] = None
    restart_policy: str = "on-failure"
    restart_sec: int = 5
    timeout_start_sec: int = 30
    timeout_stop_sec: int = 10


class UnitStatus(BaseModel):
    """Live view of a unit, independent of anything persisted."""

    name: str
    active: str = "unknown"  # active|inactive|failed|activating|deactivating|unknown
    running: bool = False
    pid: Optional[int] = None
    uptime_s: Optional[int] = None
    memory_mb: Optional[float] = None
    cpu_s: Optional[float] = None
    restarts: int = 0
    result: str = ""
    error: str = ""


def unit_name_pattern(prefix: str) -> re.Pattern:
    return re.compile(rf"^{re.escape(prefix)}-[a-z][a-z0-9_-]+-[a-z][a-z0-9_-]+$")


class Supervisor(abc.ABC):
    """Starts, stops and reports on named units.

    Every mutating call raises ``SupervisorError`` when the OS rejects
    it. ``status`` never raises for an unknown unit; it reports it as
    inactive.
    """

    def __init__(self, prefix: str = "hostplane") -> None:
        self.prefix = prefix
        self._name_re = unit_name_pattern(prefix)

    def unit_name(self, site_name: str, service_name: str) -> str:
        return f"{self.prefix}-{site_name}-{service_name}"

    def check_name(self, name: str) -> str:
        if not self._name_re.match(name):
            raise ValidationError(f"Invalid unit name: {name}")
        return name

    @abc.abstractmethod
    async def install_unit(self, spec: UnitSpec) -> None:
        """Create or replace the unit definition."""

    @abc.abstractmethod
    async def remove_unit(self, name: str) -> None:
        """Stop tracking the unit and delete its definition."""

    @abc.abstractmethod
    async def start(self, name: str) -> None: ...

    @abc.abstractmethod
    async def stop(self, name: str, graceful: bool = True) -> None: ...

    @abc.abstractmethod
    async def restart(self, name: str) -> None: ...

    @abc.abstractmethod
    async def status(self, name: str) -> UnitStatus: ...

    async def shutdown(self) -> None:
        """Release backend resources. Units keep running unless the backend owns them."""
