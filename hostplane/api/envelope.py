"""Response envelope shared by every route.

Success: ``{"success": true, "data": ..., "message": ...}``
Failure: ``{"success": false, "error": ..., "code": ..., "data": ...}``
"""

from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from hostplane.exceptions import (
    HostplaneError, NotFoundError, PartialFailureError, PermissionDeniedError,
    ResourceExhaustedError, ServiceStateError, SupervisorError, ValidationError,
)

# Most specific first
_STATUS_CODES: list[tuple[type[HostplaneError], int]] = [
    (ServiceStateError, 409),
    (ValidationError, 400),
    (PermissionDeniedError, 403),
    (NotFoundError, 404),
    (ResourceExhaustedError, 409),
    (SupervisorError, 502),
    (PartialFailureError, 200),
]


def ok(data: Any = None, message: str | None = None) -> dict:
    body: dict[str, Any] = {"success": True, "data": jsonable_encoder(data)}
    if message:
        body["message"] = message
    return body


def fail(error: str, code: str | None = None, data: Any = None) -> dict:
    body: dict[str, Any] = {"success": False, "error": error}
    if code:
        body["code"] = code
    if data is not None:
        body["data"] = jsonable_encoder(data)
    return body


def status_for(exc: HostplaneError) -> int:
    for exc_type, status in _STATUS_CODES:
        if isinstance(exc, exc_type):
            return status
    return 500


async def hostplane_error_handler(request: Request, exc: HostplaneError) -> JSONResponse:
    # Supervisor failures are logged in full where they happen; callers get a generic message
    message = exc.public_message if isinstance(exc, SupervisorError) else str(exc)
    data = exc.result if isinstance(exc, PartialFailureError) else None
    return JSONResponse(status_code=status_for(exc), content=fail(message, exc.code, data))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{where}: {first.get('msg', 'invalid request')}" if where else first.get("msg", "invalid request")
    return JSONResponse(
        status_code=400,
        content=fail(message, ValidationError.code, {"errors": jsonable_encoder(errors)}),
    )
