"""Request-scoped accessors."""

from __future__ import annotations

from typing import Optional

from fastapi import Header, Request

from hostplane.context import HostplaneContext

ADMIN_ROLE = "admin"


def get_ctx(request: Request) -> HostplaneContext:
    return request.app.state.ctx


def is_admin(x_hostplane_role: Optional[str] = Header(default=None)) -> bool:
    """Caller privilege as asserted by the authenticating proxy in front of us."""
    return (x_hostplane_role or "").lower() == ADMIN_ROLE


def caller_id(x_hostplane_user: Optional[str] = Header(default=None)) -> Optional[str]:
    return x_hostplane_user
