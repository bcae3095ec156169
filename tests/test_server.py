from __future__ import annotations

import asyncio
import time

import httpx
import pytest

from lancache.cache_proxy.app import create_app, create_metrics_app
from lancache.cache_proxy.policy import DepotPolicy
from lancache.cache_proxy.server import LancacheServer
from lancache.common.metrics import MetricsRegistry


@pytest.fixture
def local_settings(settings):
    return settings.model_copy(update={"bind_host": "127.0.0.1", "port": 0, "metrics_host": "127.0.0.1", "metrics_port": 0})


@pytest.mark.asyncio
async def test_server_serves_until_stopped(local_settings, observer) -> None:
    app = create_app(local_settings, policy=DepotPolicy(), observer=observer)
    server = LancacheServer(local_settings, app, create_metrics_app(local_settings, MetricsRegistry()))

    await server.start()
    try:
        assert server.running
        port = server.port()
        metrics_port = server.port("metrics")
        assert port and metrics_port and port != metrics_port
        async with httpx.AsyncClient() as client:
            heartbeat = await client.get(f"http://127.0.0.1:{port}/lancache-heartbeat")
            metrics = await client.get(f"http://127.0.0.1:{metrics_port}/metrics")
    finally:
        await server.stop(1.0)

    assert heartbeat.status_code == 204
    assert heartbeat.headers["X-LanCache-Processed-By"] == "lancache"
    assert metrics.status_code == 200
    assert not server.running


@pytest.mark.asyncio
async def test_stop_without_start_is_noop(local_settings) -> None:
    app = create_app(local_settings, policy=DepotPolicy())
    server = LancacheServer(local_settings, app)

    await server.stop()

    assert not server.running
    assert server.port("metrics") is None


@pytest.mark.asyncio
async def test_stop_bounds_in_flight_requests(local_settings, observer) -> None:
    first_chunk_sent = asyncio.Event()
    release = asyncio.Event()

    async def slow_body():
        yield b"x" * 64
        first_chunk_sent.set()
        await release.wait()
        yield b"y" * 64

    upstream = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=slow_body()))
    )
    app = create_app(local_settings, policy=DepotPolicy(cache_all=True), http_client=upstream, observer=observer)
    server = LancacheServer(local_settings, app)
    await server.start()

    async def download() -> None:
        async with httpx.AsyncClient(timeout=10) as client:
            async with client.stream("GET", f"http://127.0.0.1:{server.port()}/depot/730/slow") as resp:
                async for _ in resp.aiter_bytes():
                    pass

    downloader = asyncio.create_task(download())
    try:
        await asyncio.wait_for(first_chunk_sent.wait(), timeout=5)

        started = time.monotonic()
        await server.stop(0.5)
        elapsed = time.monotonic() - started
    finally:
        release.set()
        downloader.cancel()
        await asyncio.gather(downloader, return_exceptions=True)
        await upstream.aclose()

    assert not server.running
    assert elapsed < 3.0
