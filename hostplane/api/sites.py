"""Site routes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from hostplane.api.deps import get_ctx
from hostplane.api.envelope import fail, ok
from hostplane.context import HostplaneContext
from hostplane.sites.models import SiteActionResult, SiteDefinition, SiteUpdate
from hostplane.types import SiteStatus

router = APIRouter(prefix="/sites", tags=["sites"])


class DomainRequest(BaseModel):
    domain: str
    is_primary: bool = False


class EnvironmentRequest(BaseModel):
    variables: dict[str, Optional[str]] = Field(default_factory=dict)


def _action_response(result: SiteActionResult) -> dict:
    if result.ok:
        return ok(result.as_payload())
    label = "partially " if result.partial else ""
    return fail(
        f"Site {result.action} {label}failed for {len(result.failed)} service(s)",
        "partial_failure",
        result.as_payload(),
    )


@router.post("", status_code=201)
async def create_site(body: SiteDefinition, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    site = await ctx.sites.create_site(body)
    return ok(site, f"Site {site.name} created")


@router.get("")
async def list_sites(
    owner_id: Optional[str] = None,
    status: Optional[SiteStatus] = None,
    ctx: HostplaneContext = Depends(get_ctx),
) -> dict:
    return ok(await ctx.sites.list_sites(owner_id=owner_id, status=status))


@router.get("/{site_id}")
async def get_site(site_id: str, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    return ok(await ctx.sites.get_info(site_id))


@router.patch("/{site_id}")
async def update_site(site_id: str, body: SiteUpdate, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    return ok(await ctx.sites.update(site_id, body))


@router.delete("/{site_id}")
async def delete_site(site_id: str, force: bool = False, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    result = await ctx.sites.delete_site(site_id, force=force)
    return ok(result, "Site deleted")


@router.post("/{site_id}/start")
async def start_site(site_id: str, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    return _action_response(await ctx.sites.start_site(site_id))


@router.post("/{site_id}/stop")
async def stop_site(site_id: str, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    return _action_response(await ctx.sites.stop_site(site_id))


@router.post("/{site_id}/restart")
async def restart_site(site_id: str, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    return _action_response(await ctx.sites.restart_site(site_id))


@router.post("/{site_id}/domains")
async def add_domain(site_id: str, body: DomainRequest, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    site = await ctx.sites.add_domain(site_id, body.domain, body.is_primary)
    return ok(site.domains, f"Domain {body.domain} added")


@router.delete("/{site_id}/domains/{domain}")
async def remove_domain(site_id: str, domain: str, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    site = await ctx.sites.remove_domain(site_id, domain)
    return ok(site.domains, f"Domain {domain} removed")


@router.put("/{site_id}/environment")
async def set_environment(
    site_id: str, body: EnvironmentRequest, ctx: HostplaneContext = Depends(get_ctx)
) -> dict:
    site = await ctx.sites.update_environment(site_id, body.variables)
    return ok(site.environment)
