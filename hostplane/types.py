"""Core types shared across all hostplane subsystems."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TypeAlias

SiteId: TypeAlias = str
ServiceId: TypeAlias = str
AlertId: TypeAlias = str


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def utcnow() -> datetime:
    """Naive UTC timestamp; every persisted timestamp uses this clock."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ── Sites ────────────────────────────────────────────────────────────────────


class SiteStatus(str, Enum):
    PENDING = "pending"
    CREATING = "creating"
    ACTIVE = "active"
    STOPPED = "stopped"
    ERROR = "error"
    DELETING = "deleting"
    DELETED = "deleted"


# ── Services ─────────────────────────────────────────────────────────────────


class ServiceStatus(str, Enum):
    UNKNOWN = "unknown"
    STOPPED = "stopped"
    RUNNING = "running"
    FAILED = "failed"


class DesiredStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"


class ServiceType(str, Enum):
    NODE = "node"
    PYTHON = "python"
    PHP = "php"
    RUBY = "ruby"
    GO = "go"
    RUST = "rust"
    JAVA = "java"
    DOTNET = "dotnet"
    STATIC = "static"
    CUSTOM = "custom"


# ── Alerts ───────────────────────────────────────────────────────────────────


class AlertType(str, Enum):
    CPU_HIGH = "cpu_high"
    MEMORY_HIGH = "memory_high"
    DISK_HIGH = "disk_high"
    SERVICE_DOWN = "service_down"
    SITE_DOWN = "site_down"
    SERVICE_RESTART = "service_restart"
    SECURITY = "security"
    CUSTOM = "custom"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class DedupPolicy(str, Enum):
    ABSORB = "absorb"   # reuse silently
    COUNT = "count"     # reuse, bump occurrences and last_seen_at
    EXTEND = "extend"   # like COUNT, window measured from last_seen_at
