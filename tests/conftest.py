from __future__ import annotations

import asyncio
import inspect
from pathlib import Path
from typing import Awaitable, Callable, Union

import httpx
import pytest
import pytest_asyncio

from lancache.cache_proxy.app import create_app
from lancache.cache_proxy.instrumentation import MetricsObserver, OutcomeEvent
from lancache.cache_proxy.policy import DepotPolicy
from lancache.common.metrics import MetricsRegistry
from lancache.common.settings import LancacheSettings


RouteFactory = Callable[[httpx.Request], Union[httpx.Response, Awaitable[httpx.Response]]]


class FakeOrigin:
    """In-process stand-in for the CDN, plugged into httpx via MockTransport."""

    def __init__(self) -> None:
        self.calls: list[httpx.Request] = []
        self._routes: dict[str, RouteFactory] = {}

    def serve(self, path: str, payload: bytes = b"", status_code: int = 200, headers: dict | None = None) -> None:
        self._routes[path] = lambda _request: httpx.Response(status_code, content=payload, headers=headers)

    def route(self, path: str, factory: RouteFactory) -> None:
        self._routes[path] = factory

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        factory = self._routes.get(request.url.path)
        if factory is None:
            return httpx.Response(404, content=b"no such chunk")
        result = factory(request)
        if inspect.isawaitable(result):
            result = await result
        return result


class RecordingObserver(MetricsObserver):
    def __init__(self, registry: MetricsRegistry) -> None:
        super().__init__(registry)
        self.events: list[OutcomeEvent] = []
        self.durations: list[tuple[str, float]] = []

    def outcome(self, event: OutcomeEvent) -> None:
        super().outcome(event)
        self.events.append(event)

    def request_finished(self, depot: str, duration: float) -> None:
        super().request_finished(depot, duration)
        self.durations.append((depot, duration))


@pytest.fixture
def settings(tmp_path: Path) -> LancacheSettings:
    return LancacheSettings(
        storage_path=tmp_path / "cache",
        config_path=tmp_path / "lancache.toml",
        log_level="WARNING",
    )


@pytest.fixture
def origin() -> FakeOrigin:
    return FakeOrigin()


@pytest.fixture
def registry() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def observer(registry: MetricsRegistry) -> RecordingObserver:
    return RecordingObserver(registry)


@pytest.fixture(autouse=True)
def _no_bypass(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("BYPASS_CACHE", raising=False)


@pytest_asyncio.fixture
async def proxy_env(settings: LancacheSettings, origin: FakeOrigin, observer: RecordingObserver):
    """Build a proxy app against the fake origin; ``make(policy)`` returns a client."""

    upstream = httpx.AsyncClient(transport=httpx.MockTransport(origin.handler), follow_redirects=True)
    clients: list[httpx.AsyncClient] = []

    def make(policy: DepotPolicy, *, raise_app_exceptions: bool = True) -> httpx.AsyncClient:
        app = create_app(settings, policy=policy, http_client=upstream, observer=observer)
        transport = httpx.ASGITransport(app=app, raise_app_exceptions=raise_app_exceptions)
        client = httpx.AsyncClient(transport=transport, base_url="http://cdn.example")
        clients.append(client)
        return client

    yield {
        "make": make,
        "origin": origin,
        "observer": observer,
        "cache_dir": settings.storage_path,
    }

    await asyncio.gather(*(client.aclose() for client in clients))
    await upstream.aclose()
