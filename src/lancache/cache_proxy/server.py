"""Start/stop lifecycle for the proxy and metrics listeners."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI

from ..common.settings import LancacheSettings


LOGGER = structlog.get_logger("lancache.server")

# time allowed for uvicorn to wind down after the grace period ends
FORCE_EXIT_MARGIN = 1.0


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the owning process."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self) -> None:
        return None


class _Listener:
    def __init__(self, name: str, app: FastAPI, host: str, port: int) -> None:
        self.name = name
        config = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_config=None,
            log_level="info",
            access_log=False,
            lifespan="on",
        )
        self.server = _EmbeddedServer(config)
        self.task: Optional[asyncio.Task] = None

    @property
    def bound_port(self) -> Optional[int]:
        for server in getattr(self.server, "servers", []):
            for sock in server.sockets:
                return sock.getsockname()[1]
        return None


class LancacheServer:
    """Runs the caching proxy and its metrics endpoint until stopped."""

    def __init__(self, settings: LancacheSettings, app: FastAPI, metrics_app: Optional[FastAPI] = None) -> None:
        self._settings = settings
        self._listeners = [_Listener("lancache", app, settings.bind_host, settings.port)]
        if metrics_app is not None:
            self._listeners.append(_Listener("metrics", metrics_app, settings.metrics_host, settings.metrics_port))
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def port(self, name: str = "lancache") -> Optional[int]:
        for listener in self._listeners:
            if listener.name == name:
                return listener.bound_port
        return None

    async def start(self) -> None:
        if self._running:
            return
        for listener in self._listeners:
            listener.task = asyncio.create_task(listener.server.serve(), name=f"{listener.name}-server")
        for listener in self._listeners:
            await self._wait_started(listener)
            LOGGER.info("running server", server=listener.name, port=listener.bound_port)
        self._running = True

    async def _wait_started(self, listener: _Listener) -> None:
        assert listener.task is not None
        while not listener.server.started:
            if listener.task.done():
                # serve() finished before the listener came up
                await self.stop(0)
                raise RuntimeError(f"{listener.name} server failed to start")
            await asyncio.sleep(0.01)

    async def stop(self, grace: Optional[float] = None) -> None:
        """Stop accepting connections and give in-flight requests ``grace`` seconds to finish."""

        tasks = [listener.task for listener in self._listeners if listener.task is not None]
        if not tasks:
            return
        if grace is None:
            grace = self._settings.shutdown_timeout_seconds
        LOGGER.info("stopping servers", grace_seconds=grace)
        for listener in self._listeners:
            # uvicorn cancels request tasks still running after this timeout
            listener.server.config.timeout_graceful_shutdown = grace
            listener.server.should_exit = True

        _, pending = await asyncio.wait(tasks, timeout=grace + FORCE_EXIT_MARGIN)
        if pending:
            LOGGER.error("forced shutdown", pending=len(pending))
            for listener in self._listeners:
                listener.server.force_exit = True
            _, pending = await asyncio.wait(pending, timeout=FORCE_EXIT_MARGIN)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)

        for task in tasks:
            if not task.cancelled() and task.exception() is not None:
                LOGGER.error("server exited with error", error=str(task.exception()))
        for listener in self._listeners:
            listener.task = None
        self._running = False
        LOGGER.info("stopped servers")
