import asyncio

import httpx
import pytest

from lb_sync.main import build_driver, create_app


@pytest.fixture
def app(app_config):
    app = create_app()
    driver = build_driver(app_config, app.state.ctx)
    driver.start_watchers()
    driver.step()
    app.state.driver = driver
    return app


@pytest.mark.anyio
async def test_readyz_and_metrics(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://lb.local") as client:
        resp = await client.get("/readyz")
        assert resp.json() == {"status": "ok"}

        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert "lb_sync_stanza_renders_total 1.0" in resp.text
        assert 'lb_sync_backends{service="svc"} 1.0' in resp.text


@pytest.mark.anyio
async def test_status_and_service_config(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://lb.local") as client:
        resp = await client.get("/status")
        assert resp.status_code == 200
        data = resp.json()
        assert data["time"] == 1
        assert data["services"] == [{"name": "svc", "revision": 0, "backends": 1}]

        resp = await client.get("/services/svc/config")
        assert resp.status_code == 200
        assert "\nfrontend svc\n" in resp.text
        assert "\tbind localhost:3213" in resp.text

        resp = await client.get("/services/other/config")
        assert resp.status_code == 404


@pytest.mark.anyio
async def test_reconfigure_schedules_an_update(app):
    driver = app.state.driver
    renders = app.state.ctx.metrics.stanza_renders._value.get()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://lb.local") as client:
        resp = await client.post("/reconfigure")
        assert resp.status_code == 202
    driver.step()
    # same revision, so the stanza comes from the cache
    assert app.state.ctx.metrics.stanza_renders._value.get() == renders
    assert app.state.ctx.metrics.stanza_cache_hits._value.get() == 1


@pytest.mark.anyio
async def test_health_follows_the_main_loop(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://lb.local") as client:
        resp = await client.get("/health")
        assert resp.status_code == 503

        app.state.driver_task = asyncio.ensure_future(asyncio.sleep(10))
        try:
            resp = await client.get("/health")
            assert resp.json() == {"status": "OK"}
        finally:
            app.state.driver_task.cancel()


@pytest.mark.anyio
async def test_endpoints_without_driver():
    transport = httpx.ASGITransport(app=create_app())
    async with httpx.AsyncClient(transport=transport, base_url="http://lb.local") as client:
        resp = await client.get("/status")
        assert resp.status_code == 503
