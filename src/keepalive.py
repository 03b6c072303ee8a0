"""Health endpoint and keep-alive ping for hosts that idle quiet services."""

from __future__ import annotations

import asyncio
from typing import Callable, Dict, Optional

import aiohttp
from aiohttp import web

from utils import logger


def build_health_app(status: Optional[Callable[[], Dict]] = None) -> web.Application:
    async def health(_request: web.Request) -> web.Response:
        body = {"status": "ok"}
        if status is not None:
            body.update(status())
        return web.json_response(body)

    async def index(_request: web.Request) -> web.Response:
        return web.Response(text="spot grid bot running")

    app = web.Application()
    app.router.add_get("/health", health)
    app.router.add_get("/", index)
    return app


async def start_health_server(
    port: int, status: Optional[Callable[[], Dict]] = None, host: str = "0.0.0.0"
) -> web.AppRunner:
    runner = web.AppRunner(build_health_app(status))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("health server listening | host=%s port=%d", host, port)
    return runner


async def keepalive_loop(url: str, interval: float, closing: asyncio.Event) -> None:
    timeout = aiohttp.ClientTimeout(total=5)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        while not closing.is_set():
            try:
                async with session.get(url) as resp:
                    logger.debug("keepalive ping | url=%s status=%s", url, resp.status)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("keepalive failed | url=%s error=%s", url, exc)
            try:
                await asyncio.wait_for(closing.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
