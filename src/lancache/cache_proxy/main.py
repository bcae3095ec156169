"""Command-line entrypoint for running the lancache proxy."""

from __future__ import annotations

import asyncio
import signal

import structlog

from ..common.settings import LancacheSettings
from .app import create_app, create_metrics_app
from .server import LancacheServer


LOGGER = structlog.get_logger("lancache")


async def main() -> None:
    settings = LancacheSettings()
    app = create_app(settings)
    server = LancacheServer(settings, app, create_metrics_app(settings))

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()
    received: list[str] = []

    def _request_stop(sig: signal.Signals) -> None:
        received.append(sig.name)
        stop_requested.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _request_stop, sig)

    await server.start()
    try:
        await stop_requested.wait()
        LOGGER.info("signal received, stopping lancache server", signal=received[0])
    finally:
        await server.stop(settings.shutdown_timeout_seconds)
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
    LOGGER.info("stopped lancache server")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
