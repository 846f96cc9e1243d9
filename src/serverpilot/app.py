"""FastAPI application factory.

All plugin-system state is built once here and hung on ``app.state``:

    app.state.settings        Settings
    app.state.engine          ExecutionEngine (owns the CommandRegistry)
    app.state.plugins         PluginManager
    app.state.marketplace     MarketplaceInstaller
    app.state.plugin_router   PluginApiRouter
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from serverpilot import __version__
from serverpilot.api import router as plugins_router
from serverpilot.config import Settings, get_settings
from serverpilot.exec import CommandRegistry, ExecutionEngine
from serverpilot.plugins import MarketplaceInstaller, PluginApiRouter, PluginManager

logger = logging.getLogger(__name__)


def build_engine(settings: Settings) -> ExecutionEngine:
    return ExecutionEngine(
        CommandRegistry(),
        sync_timeout=settings.exec_sync_timeout,
        async_timeout=settings.exec_async_timeout,
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    engine = build_engine(settings)
    manager = PluginManager.from_settings(settings, engine)
    marketplace = MarketplaceInstaller.from_settings(settings, manager)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting ServerPilot v%s", __version__)
        await manager.discover()
        yield
        logger.info("Shutting down ServerPilot")
        await manager.shutdown()

    app = FastAPI(title="ServerPilot", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.plugins = manager
    app.state.marketplace = marketplace
    app.state.plugin_router = PluginApiRouter(manager)

    app.include_router(plugins_router)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    return app

