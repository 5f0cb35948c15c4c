"""lb-sync FastAPI application.

Builds the HAProxy generator and the discovery watchers from the config
file, runs the sync loop as a background task, and exposes health, status
and Prometheus metrics endpoints.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from lb_sync.api.routes import router
from lb_sync.core.config import AppConfig, Settings, load_config, load_settings
from lb_sync.core.context import SyncContext
from lb_sync.core.logging import setup_logging
from lb_sync.services.driver import SyncDriver
from lb_sync.services.generator import HaproxyGenerator
from lb_sync.services.watchers import create_watcher


def build_driver(config: AppConfig, ctx: SyncContext, tick_interval: float = 1.0) -> SyncDriver:
    """Wire the generator, the watchers and the driver together."""
    generator = HaproxyGenerator(ctx.child("haproxy"), config.haproxy)
    driver = SyncDriver(ctx, generator, tick_interval=tick_interval)
    driver.watchers = [
        create_watcher(name, service, driver.reconfigure, ctx, generator.normalize_watcher_provided_config)
        for name, service in config.services.items()
    ]
    return driver


def create_app(settings: Optional[Settings] = None, config: Optional[AppConfig] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan.

        Sets up logging, builds the driver and its watchers, and keeps the
        sync loop running for the lifetime of the app.
        """
        nonlocal settings, config
        settings = settings or load_settings()
        setup_logging(settings.log_level)
        config = config or load_config(settings.config_path)

        ctx = app.state.ctx
        driver = build_driver(config, ctx, settings.tick_interval_s)
        driver.start_watchers()
        app.state.driver = driver
        app.state.driver_task = asyncio.create_task(driver.run())
        try:
            yield
        finally:
            app.state.driver_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await app.state.driver_task
            driver.stop_watchers()

    app = FastAPI(title="lb-sync", version="0.1.0", lifespan=lifespan)
    app.state.ctx = SyncContext(log=logging.getLogger("lb_sync"))
    app.include_router(router)

    @app.get("/readyz")
    async def readyz():
        """Readiness probe endpoint returning a minimal OK payload."""
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics(request: Request):
        """Prometheus exposition endpoint for the sync loop metrics."""
        data = generate_latest(request.app.state.ctx.metrics.registry)
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app


def main() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = load_settings()
    uvicorn.run(create_app(settings), host=settings.api_host, port=settings.api_port)
