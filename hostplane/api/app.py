"""Application factory.

The context is started and stopped by the app lifespan so the store and
the collector live on the server's event loop.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError

from hostplane import __version__
from hostplane.api import services, sites, stats
from hostplane.api.envelope import hostplane_error_handler, ok, request_validation_handler
from hostplane.context import HostplaneContext
from hostplane.exceptions import HostplaneError


def create_app(ctx: HostplaneContext, run_collector: bool = False) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await ctx.start(run_collector=run_collector)
        try:
            yield
        finally:
            await ctx.stop()

    app = FastAPI(title="hostplane", version=__version__, lifespan=lifespan)
    app.state.ctx = ctx
    app.add_exception_handler(HostplaneError, hostplane_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(sites.router, prefix="/api")
    app.include_router(services.router, prefix="/api")
    app.include_router(stats.router, prefix="/api")

    @app.get("/api/health")
    async def health(request: Request) -> dict:
        c: HostplaneContext = request.app.state.ctx
        return ok({
            "version": __version__,
            "collector_running": c.collector.is_running,
            "supervisor": type(c.supervisor).__name__,
        })

    @app.get("/api/events")
    async def events(request: Request, topic: str = "*", limit: int = 50) -> dict:
        c: HostplaneContext = request.app.state.ctx
        return ok([e.model_dump(mode="json") for e in c.event_bus.history(topic, limit)])

    return app
