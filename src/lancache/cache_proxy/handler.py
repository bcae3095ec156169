"""Per-request orchestration: policy, lookup, fetch and populate."""

from __future__ import annotations

import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional

import anyio
import structlog
from fastapi import Request, Response, status
from fastapi.responses import FileResponse, PlainTextResponse, RedirectResponse, StreamingResponse
from opentelemetry import trace
from starlette.types import Receive, Scope, Send

from ..common.settings import bypass_cache
from .instrumentation import CacheObserver, OutcomeEvent, RequestOutcome
from .origin import OriginError, OriginFetcher, OriginResponse, origin_url
from .policy import DepotPolicy
from .store import CacheStore, StagingFile


LOGGER = structlog.get_logger("lancache.cache_proxy")
TRACER = trace.get_tracer("lancache.cache_proxy")

OCTET_STREAM = "application/octet-stream"


@dataclass
class RequestContext:
    depot: str
    host: str
    path: str
    started: float
    logger: structlog.typing.FilteringBoundLogger
    span: trace.Span
    outcome: Optional[RequestOutcome] = None
    finished: bool = field(default=False)


class TeeStreamingResponse(StreamingResponse):
    """Streaming response that always runs ``on_close`` once the exchange ends.

    Starlette leaves the body iterator suspended when the client goes away,
    so the cleanup of the staging file and the upstream connection is driven
    from here rather than left to garbage collection.
    """

    def __init__(self, content: AsyncIterator[bytes], on_close: Callable[[], Awaitable[None]], **kwargs) -> None:
        super().__init__(content, **kwargs)
        self._on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            with anyio.CancelScope(shield=True):
                await self.body_iterator.aclose()  # type: ignore[attr-defined]
                await self._on_close()


class CachedFileResponse(FileResponse):
    """File response that runs ``on_close`` after the body has been sent or abandoned."""

    def __init__(self, path: Path, on_close: Callable[[], None], **kwargs) -> None:
        super().__init__(path, **kwargs)
        self._on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self._on_close()


class RequestOrchestrator:
    def __init__(
        self,
        policy: DepotPolicy,
        store: CacheStore,
        fetcher: OriginFetcher,
        observer: CacheObserver,
        bypass: Callable[[], bool] = bypass_cache,
    ) -> None:
        self._policy = policy
        self._store = store
        self._fetcher = fetcher
        self._observer = observer
        self._bypass = bypass

    async def handle(self, request: Request, depot: str) -> Response:
        self._observer.request_received()
        host = request.headers.get("host") or request.url.netloc
        # decoded path as received; request.url would re-parse a decoded "?" or "#"
        path = request.scope["path"]
        span = TRACER.start_span(
            "lancache.request",
            attributes={"lancache.depot": depot, "lancache.host": host, "lancache.path": path},
        )
        context = RequestContext(
            depot=depot,
            host=host,
            path=path,
            started=time.perf_counter(),
            logger=LOGGER.bind(depot=depot, host=host, path=path),
            span=span,
        )

        deferred = False
        try:
            with trace.use_span(span, end_on_exit=False):
                if not self._policy.should_cache(depot, self._bypass()):
                    return self._skip(context)

                cache_path = self._store.resolve(path)
                entry = self._store.lookup(cache_path)
                if entry is not None:
                    self._emit(context, RequestOutcome.HIT, entry.size)
                    context.logger.info("hit", bytes=entry.size)
                    deferred = True
                    return CachedFileResponse(entry.path, on_close=lambda: self._finish(context), media_type=OCTET_STREAM)

                response = await self._miss(context, cache_path)
                deferred = isinstance(response, TeeStreamingResponse)
                return response
        finally:
            if not deferred:
                self._finish(context)

    def _skip(self, context: RequestContext) -> Response:
        # not cached here; send the client straight to the origin
        self._emit(context, RequestOutcome.SKIP)
        context.logger.info("skip")
        return RedirectResponse(origin_url(context.host, context.path), status_code=status.HTTP_303_SEE_OTHER)

    async def _miss(self, context: RequestContext, cache_path: Path) -> Response:
        context.logger.info("miss")

        try:
            self._store.ensure_parent(cache_path)
        except (OSError, ValueError) as exc:
            context.logger.error("while creating cache directory", error=str(exc))
            self._emit(context, RequestOutcome.MISS_ERROR, error=str(exc))
            return PlainTextResponse("Failed to create cache directory\n", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

        try:
            upstream = await self._fetcher.fetch(context.host, context.path)
        except OriginError as exc:
            context.logger.warning("upstream error", error=str(exc), status=exc.status_code)
            self._emit(context, RequestOutcome.MISS_ERROR, error=str(exc))
            return PlainTextResponse(f"{exc}\n", status_code=exc.status_code)

        try:
            staging = self._store.stage(cache_path)
        except (OSError, ValueError) as exc:
            await upstream.aclose()
            context.logger.error("while creating temporary file", error=str(exc))
            self._emit(context, RequestOutcome.MISS_ERROR, error=str(exc))
            return PlainTextResponse("Failed to create temporary file\n", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

        headers: dict[str, str] = {}
        if upstream.content_length is not None:
            headers["Content-Length"] = str(upstream.content_length)
            self._observer.upstream_bytes(context.depot, upstream.content_length)

        async def on_close() -> None:
            staging.discard()
            await upstream.aclose()
            if context.outcome is None:
                self._emit(context, RequestOutcome.MISS_ERROR, staging.bytes_written, error="response not sent")
            self._finish(context)

        return TeeStreamingResponse(
            self._stream(context, upstream, staging),
            on_close=on_close,
            headers=headers,
            media_type=upstream.content_type or OCTET_STREAM,
        )

    async def _stream(self, context: RequestContext, upstream: OriginResponse, staging: StagingFile) -> AsyncIterator[bytes]:
        # Status and headers are already sent when iteration starts. Failures
        # are logged and re-raised so the connection is aborted instead of
        # the body ending cleanly.
        try:
            async with aclosing(self._store.populate(staging, upstream.aiter_bytes())) as tee:
                async for chunk in tee:
                    yield chunk
        except (GeneratorExit, asyncio.CancelledError):
            context.logger.warning("client disconnected", bytes=staging.bytes_written)
            self._emit(context, RequestOutcome.MISS_ERROR, staging.bytes_written, error="client disconnected")
            raise
        except Exception as exc:
            context.logger.error("while caching upstream", error=str(exc), bytes=staging.bytes_written)
            self._emit(context, RequestOutcome.MISS_ERROR, staging.bytes_written, error=str(exc))
            raise
        else:
            context.logger.info("cached", bytes=staging.bytes_written)
            self._emit(context, RequestOutcome.MISS_SUCCESS, staging.bytes_written)

    def _emit(
        self,
        context: RequestContext,
        outcome: RequestOutcome,
        size: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        if context.outcome is not None:
            return
        context.outcome = outcome
        context.span.set_attribute("lancache.outcome", outcome.value)
        if size is not None:
            context.span.set_attribute("lancache.bytes", size)
        self._observer.outcome(OutcomeEvent(outcome=outcome, depot=context.depot, bytes=size, error=error))

    def _finish(self, context: RequestContext) -> None:
        if context.finished:
            return
        context.finished = True
        duration = time.perf_counter() - context.started
        self._observer.request_finished(context.depot, duration)
        context.span.end()
