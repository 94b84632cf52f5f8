"""Supervisor backends — the OS facility that keeps services running."""

from hostplane.supervisor.base import Supervisor, UnitSpec, UnitStatus

__all__ = ["Supervisor", "UnitSpec", "UnitStatus"]
