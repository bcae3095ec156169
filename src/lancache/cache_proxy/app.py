"""HTTP surface of the caching proxy and its metrics listener."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Callable, Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.responses import PlainTextResponse

from ..common.http_security import metrics_guard
from ..common.metrics import GLOBAL_REGISTRY, MetricsRegistry
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.settings import LancacheSettings, bypass_cache
from .handler import RequestOrchestrator
from .instrumentation import CacheObserver, MetricsObserver
from .origin import OriginFetcher, build_http_client
from .policy import DepotPolicy, load_policy
from .store import CacheStore


LOGGER = structlog.get_logger("lancache.cache_proxy")

PROCESSED_BY_HEADER = "X-LanCache-Processed-By"
SERVICE_NAME = "lancache"


class LancacheState:
    def __init__(
        self,
        settings: LancacheSettings,
        policy: DepotPolicy,
        store: CacheStore,
        http_client: httpx.AsyncClient,
        observer: CacheObserver,
        bypass: Callable[[], bool] = bypass_cache,
    ) -> None:
        self.settings = settings
        self.policy = policy
        self.store = store
        self.http_client = http_client
        self.observer = observer
        self.fetcher = OriginFetcher(http_client, settings.user_agent)
        self.orchestrator = RequestOrchestrator(policy, store, self.fetcher, observer, bypass=bypass)
        self.logger = LOGGER.bind(storage_path=str(store.root))


def get_state(request: Request) -> LancacheState:
    return request.app.state.lancache  # type: ignore[attr-defined]


def create_app(
    settings: Optional[LancacheSettings] = None,
    *,
    policy: Optional[DepotPolicy] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    observer: Optional[CacheObserver] = None,
    bypass: Callable[[], bool] = bypass_cache,
) -> FastAPI:
    settings = settings or LancacheSettings()
    configure_logging(SERVICE_NAME, settings.log_level, pretty=not settings.production)
    configure_tracing(
        service_name=SERVICE_NAME,
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )

    if policy is None:
        policy = load_policy(settings.config_path)
    store = CacheStore(settings.storage_path)
    store.initialise()
    owns_client = http_client is None
    client = http_client if http_client is not None else build_http_client(settings)
    state = LancacheState(
        settings,
        policy,
        store,
        client,
        observer if observer is not None else MetricsObserver(),
        bypass=bypass,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state.logger.info("lancache ready", cache_all=policy.cache_all, depots=len(policy.depots))
        try:
            yield
        finally:
            if owns_client:
                await client.aclose()

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    instrument_fastapi_app(app)
    app.state.lancache = state

    @app.api_route("/lancache-heartbeat", methods=["GET", "HEAD"], status_code=status.HTTP_204_NO_CONTENT)
    async def heartbeat() -> Response:
        return Response(status_code=status.HTTP_204_NO_CONTENT, headers={PROCESSED_BY_HEADER: SERVICE_NAME})

    @app.get("/depot/{depot}/{path:path}")
    async def depot_content(
        depot: str,
        path: str,
        request: Request,
        state: LancacheState = Depends(get_state),
    ) -> Response:
        return await state.orchestrator.handle(request, depot)

    return app


def create_metrics_app(settings: LancacheSettings, registry: MetricsRegistry = GLOBAL_REGISTRY) -> FastAPI:
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
    token = settings.metrics_token.get_secret_value() if settings.metrics_token else None

    @app.get("/metrics", response_class=PlainTextResponse, dependencies=[Depends(metrics_guard(token))])
    async def metrics_endpoint() -> PlainTextResponse:
        return PlainTextResponse(registry.render(), media_type="text/plain; version=0.0.4")

    return app
