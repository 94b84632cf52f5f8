"""Stats, alert and monitoring-config routes."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query

from hostplane.api.deps import caller_id, get_ctx, is_admin
from hostplane.api.envelope import fail, ok
from hostplane.context import HostplaneContext
from hostplane.exceptions import PermissionDeniedError
from hostplane.monitoring.models import AlertFilter
from hostplane.types import AlertSeverity, AlertStatus

router = APIRouter(prefix="/stats", tags=["stats"])


@router.get("/server")
async def server_stats(ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    return ok(await ctx.collector.get_server_stats())


@router.get("/server/history")
async def server_history(
    hours: float = Query(default=1, gt=0, le=168),
    limit: int = Query(default=60, ge=1, le=1000),
    ctx: HostplaneContext = Depends(get_ctx),
) -> dict:
    return ok(await ctx.collector.get_server_history(hours, limit))


@router.post("/collect")
async def collect_now(admin: bool = Depends(is_admin), ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    if not admin:
        raise PermissionDeniedError("Triggering a collection requires admin")
    sample = await ctx.collector.collect_once()
    if sample is None:
        return fail("Collection skipped or failed", "collection_failed")
    return ok(sample)


@router.get("/sites")
async def all_sites_stats(ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    return ok(await ctx.collector.get_all_sites_stats())


@router.get("/sites/{site_id}")
async def site_stats(site_id: str, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    return ok(await ctx.collector.get_site_stats(site_id))


@router.get("/sites/{site_id}/history")
async def site_history(
    site_id: str,
    hours: float = Query(default=1, gt=0, le=168),
    limit: int = Query(default=60, ge=1, le=1000),
    ctx: HostplaneContext = Depends(get_ctx),
) -> dict:
    return ok(await ctx.collector.get_site_history(site_id, hours, limit))


@router.get("/sites/{site_id}/services")
async def site_services_stats(site_id: str, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    return ok(await ctx.collector.get_site_services_stats(site_id))


@router.get("/alerts")
async def list_alerts(
    status: Optional[AlertStatus] = None,
    severity: Optional[AlertSeverity] = None,
    type: Optional[str] = None,
    site_id: Optional[str] = None,
    service_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    ctx: HostplaneContext = Depends(get_ctx),
) -> dict:
    flt = AlertFilter(
        status=status, severity=severity, type=type,
        site_id=site_id, service_id=service_id, limit=limit,
    )
    return ok(await ctx.collector.list_alerts(flt))


@router.post("/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(
    alert_id: str,
    user: Optional[str] = Depends(caller_id),
    ctx: HostplaneContext = Depends(get_ctx),
) -> dict:
    return ok(await ctx.collector.acknowledge_alert(alert_id, user), "Alert acknowledged")


@router.post("/alerts/{alert_id}/resolve")
async def resolve_alert(alert_id: str, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    return ok(await ctx.collector.resolve_alert(alert_id), "Alert resolved")


@router.get("/config")
async def get_config(ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    return ok(ctx.collector.get_config())


@router.put("/config")
async def update_config(
    changes: dict[str, Any] = Body(...),
    ctx: HostplaneContext = Depends(get_ctx),
) -> dict:
    return ok(await ctx.collector.update_config(changes), "Monitoring configuration updated")
