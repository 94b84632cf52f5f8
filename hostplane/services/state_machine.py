"""Service lifecycle transitions.

``failed`` is reachable from ``running`` on a crash and is left only by
an explicit start. ``unknown`` means a transition was attempted but never
confirmed; any action may follow it.
"""

from __future__ import annotations

from hostplane.exceptions import ServiceStateError
from hostplane.types import ServiceStatus

VALID_TRANSITIONS: dict[ServiceStatus, set[ServiceStatus]] = {
    ServiceStatus.STOPPED: {ServiceStatus.RUNNING, ServiceStatus.FAILED, ServiceStatus.UNKNOWN},
    ServiceStatus.RUNNING: {
        ServiceStatus.STOPPED,
        ServiceStatus.FAILED,
        ServiceStatus.UNKNOWN,
        ServiceStatus.RUNNING,  # restart
    },
    ServiceStatus.FAILED: {ServiceStatus.RUNNING, ServiceStatus.STOPPED, ServiceStatus.UNKNOWN},
    ServiceStatus.UNKNOWN: {
        ServiceStatus.RUNNING,
        ServiceStatus.STOPPED,
        ServiceStatus.FAILED,
        ServiceStatus.UNKNOWN,
    },
}

# Actions a caller may request from each persisted status
ALLOWED_ACTIONS: dict[ServiceStatus, set[str]] = {
    ServiceStatus.STOPPED: {"start", "stop", "restart"},
    ServiceStatus.RUNNING: {"start", "stop", "restart"},
    ServiceStatus.FAILED: {"start", "stop"},
    ServiceStatus.UNKNOWN: {"start", "stop", "restart"},
}


def can_transition(current: ServiceStatus, target: ServiceStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def check_transition(service_name: str, current: ServiceStatus, target: ServiceStatus) -> None:
    if not can_transition(current, target):
        raise ServiceStateError(
            f"Cannot transition service {service_name} from {current.value} to {target.value}"
        )


def check_action(service_name: str, current: ServiceStatus, action: str) -> None:
    if action not in ALLOWED_ACTIONS.get(current, set()):
        hint = " (start it explicitly)" if current == ServiceStatus.FAILED else ""
        raise ServiceStateError(
            f"Cannot {action} service {service_name} while it is {current.value}{hint}"
        )
