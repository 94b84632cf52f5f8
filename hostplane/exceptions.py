"""Custom exception hierarchy for hostplane.

Every error carries a stable ``code`` that the HTTP layer puts in the
failure envelope.
"""

from __future__ import annotations

from typing import Any


class HostplaneError(Exception):
    """Base for all control plane errors."""

    code = "internal_error"


class ValidationError(HostplaneError):
    """Bad input. Never retried, surfaced verbatim."""

    code = "validation_error"


class ServiceStateError(ValidationError):
    """Invalid service lifecycle transition."""

    code = "invalid_state"


class NotFoundError(HostplaneError):
    """No entity with the given ID exists."""

    code = "not_found"


class ResourceExhaustedError(HostplaneError):
    """No free port or port range left."""

    code = "resource_exhausted"


class PermissionDeniedError(HostplaneError):
    """Caller lacks the privilege the operation requires."""

    code = "permission_denied"


class SupervisorError(HostplaneError):
    """The OS process supervisor rejected or failed a command."""

    code = "supervisor_error"
    public_message = "Supervisor operation failed"


class ProvisioningError(SupervisorError):
    """Creating or removing a site's OS account or filesystem root failed."""

    code = "provisioning_error"
    public_message = "Site provisioning failed"


class PartialFailureError(HostplaneError):
    """A fan-out finished with mixed outcomes."""

    code = "partial_failure"

    def __init__(self, message: str, result: Any = None) -> None:
        super().__init__(message)
        self.result = result
