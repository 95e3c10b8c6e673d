"""
FastAPI application serving health and status endpoints.
"""

import contextlib

import uvicorn
from fastapi import FastAPI

from subscription_tracker.api.context import ServiceContext
from subscription_tracker.api.routes import health
from subscription_tracker.core.exceptions import HealthServerError


def create_app(context: ServiceContext) -> FastAPI:
    """Build the health application around already constructed components."""
    app = FastAPI(
        title=context.config.app_name,
        version=context.config.app_version,
        docs_url="/docs" if context.config.debug else None,
        redoc_url=None,
    )
    app.state.context = context

    app.include_router(health.router, tags=["System"])
    if not context.config.is_production:
        app.include_router(health.debug_router, tags=["System"])

    return app


class HealthServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the service."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self) -> None:
        pass

    async def serve(self, sockets=None) -> None:
        # uvicorn exits the process when startup fails
        try:
            await super().serve(sockets=sockets)
        except SystemExit as e:
            raise HealthServerError(self.config.host, self.config.port) from e


def create_server(context: ServiceContext) -> HealthServer:
    config = uvicorn.Config(
        create_app(context),
        host=context.config.health_check_host,
        port=context.config.health_check_port,
        log_config=None,
        access_log=False,
    )
    return HealthServer(config)
