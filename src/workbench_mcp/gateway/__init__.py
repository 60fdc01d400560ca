"""HTTP entry point for chat streaming and git operations."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any

from aiohttp import web

from ..config import get_settings
from ..pipeline import build_pipeline
from .app import create_app
from .proxy import create_proxy_app

logger = logging.getLogger(__name__)


def build_app() -> web.Application:
    """Local pipeline app, or a relay when an execution tier URL is configured."""

    settings = get_settings()
    if settings.execution_upstream_url:
        return create_proxy_app(settings.execution_upstream_url)
    return create_app(build_pipeline(settings))


async def async_main() -> None:
    settings = get_settings()
    app = build_app()

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _signal_handler(*_: Any) -> None:
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            pass

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, settings.host, settings.port)
    await site.start()
    logger.info(
        "Workbench gateway listening",
        extra={
            "host": settings.host,
            "port": settings.port,
            "upstream": settings.execution_upstream_url,
        },
    )

    try:
        await stop_event.wait()
    finally:
        await runner.cleanup()


def main() -> None:
    """Entry point for the ``workbench-gateway`` console script."""

    from ..server import configure_logging

    configure_logging(get_settings().log_level)
    try:
        asyncio.run(async_main())
    except KeyboardInterrupt:
        pass


__all__ = ["build_app", "create_app", "create_proxy_app", "main"]
