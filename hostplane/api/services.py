"""Service routes."""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from hostplane.api.deps import get_ctx, is_admin
from hostplane.api.envelope import fail, ok
from hostplane.context import HostplaneContext
from hostplane.runner import CommandResult
from hostplane.services.models import CustomCommand, ServiceDefinition, ServiceUpdate

router = APIRouter(tags=["services"])


class EnvironmentRequest(BaseModel):
    variables: dict[str, Optional[str]] = Field(default_factory=dict)


class BulkRequest(BaseModel):
    service_ids: list[str] = Field(min_length=1, max_length=100)
    action: Literal["start", "stop", "restart"]


def _command_response(result: CommandResult, command: str) -> dict:
    data = {"command": command, **result.model_dump()}
    if result.success:
        return ok(data)
    return fail(result.error or f"{command} failed", "timeout" if result.timed_out else "command_failed", data)


@router.post("/sites/{site_id}/services", status_code=201)
async def create_service(
    site_id: str, body: ServiceDefinition, ctx: HostplaneContext = Depends(get_ctx)
) -> dict:
    service = await ctx.services.create_service(site_id, body)
    return ok(service, f"Service {service.name} created")


@router.get("/sites/{site_id}/services")
async def list_services(site_id: str, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    site = await ctx.sites.get(site_id)
    return ok(await ctx.services.list_for_site(site.id))


@router.post("/services/bulk")
async def bulk_action(body: BulkRequest, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    return ok(await ctx.services.bulk_action(body.service_ids, body.action))


@router.get("/services/{service_id}")
async def get_service(service_id: str, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    return ok(await ctx.services.get(service_id))


@router.patch("/services/{service_id}")
async def update_service(
    service_id: str, body: ServiceUpdate, ctx: HostplaneContext = Depends(get_ctx)
) -> dict:
    return ok(await ctx.services.update(service_id, body))


@router.delete("/services/{service_id}")
async def delete_service(service_id: str, force: bool = False, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    await ctx.services.delete(service_id, force=force)
    return ok(None, "Service deleted")


@router.post("/services/{service_id}/start")
async def start_service(service_id: str, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    return ok(await ctx.services.start(service_id))


@router.post("/services/{service_id}/stop")
async def stop_service(service_id: str, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    return ok(await ctx.services.stop(service_id))


@router.post("/services/{service_id}/restart")
async def restart_service(service_id: str, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    return ok(await ctx.services.restart(service_id))


@router.get("/services/{service_id}/status")
async def service_status(service_id: str, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    service, unit = await ctx.services.get_status(service_id)
    return ok({"service": service, "unit": unit})


@router.get("/services/{service_id}/health")
async def service_health(service_id: str, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    return ok(await ctx.services.check_health(service_id))


@router.post("/services/{service_id}/install")
async def install_service(service_id: str, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    return _command_response(await ctx.services.install(service_id), "install")


@router.post("/services/{service_id}/build")
async def build_service(service_id: str, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    return _command_response(await ctx.services.build(service_id), "build")


@router.put("/services/{service_id}/environment")
async def set_environment(
    service_id: str, body: EnvironmentRequest, ctx: HostplaneContext = Depends(get_ctx)
) -> dict:
    service = await ctx.services.set_environment(service_id, body.variables)
    return ok(service.environment)


@router.get("/services/{service_id}/commands")
async def list_commands(service_id: str, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    return ok(await ctx.services.list_commands(service_id))


@router.post("/services/{service_id}/commands", status_code=201)
async def add_command(
    service_id: str, body: CustomCommand, ctx: HostplaneContext = Depends(get_ctx)
) -> dict:
    service = await ctx.services.add_command(service_id, body)
    return ok(service.custom_commands, f"Command {body.name} added")


@router.delete("/services/{service_id}/commands/{name}")
async def remove_command(service_id: str, name: str, ctx: HostplaneContext = Depends(get_ctx)) -> dict:
    service = await ctx.services.remove_command(service_id, name)
    return ok(service.custom_commands, f"Command {name} removed")


@router.post("/services/{service_id}/commands/{name}/execute")
async def execute_command(
    service_id: str,
    name: str,
    admin: bool = Depends(is_admin),
    ctx: HostplaneContext = Depends(get_ctx),
) -> dict:
    result = await ctx.services.execute_command(service_id, name, privileged=admin)
    return _command_response(result, name)
