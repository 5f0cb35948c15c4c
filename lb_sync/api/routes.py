"""Admin API for lb-sync.

Read-only views of the generator state plus a trigger to force a
regeneration. The driver is placed on ``app.state`` by the application
lifespan.
"""
from __future__ import annotations

from logging import getLogger

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse

from lb_sync.services.driver import SyncDriver

log = getLogger("lb_sync.api")
router = APIRouter()


def _get_driver(request: Request) -> SyncDriver:
    driver = getattr(request.app.state, "driver", None)
    if driver is None:
        raise HTTPException(status_code=503, detail="driver not initialized")
    return driver


@router.get("/health")
async def health_check(request: Request):
    """Healthy while the main loop task is alive."""
    task = getattr(request.app.state, "driver_task", None)
    if task is None or task.done():
        raise HTTPException(status_code=503, detail="main loop not running")
    return {"status": "OK"}


@router.get("/status")
async def status(request: Request):
    """Virtual clock, reload bookkeeping and per-service revisions."""
    driver = _get_driver(request)
    state = driver.generator.restart_state
    services = [
        {"name": view.name, "revision": view.revision, "backends": len(view.backends)}
        for view in driver.views()
    ]
    return {
        "time": state.time,
        "next_restart": state.next_restart,
        "restart_required": state.restart_required,
        "services": services,
    }


@router.get("/services/{name}/config", response_class=PlainTextResponse)
async def service_config(name: str, request: Request):
    """Last rendered frontend/backend stanzas of one service."""
    driver = _get_driver(request)
    text = driver.generator.service_config_text(name)
    if text is None:
        raise HTTPException(status_code=404, detail="service not rendered")
    return PlainTextResponse(text)


@router.post("/reconfigure", status_code=202)
async def reconfigure(request: Request):
    """Force a regeneration on the next tick."""
    _get_driver(request).reconfigure()
    log.info("reconfigure requested via API")
    return {"status": "scheduled"}
