"""Gateway mode that forwards every request to a separately hosted execution tier."""

from __future__ import annotations

import logging
from typing import AsyncIterator

import aiohttp
from aiohttp import web

from .app import SSE_HEADERS

logger = logging.getLogger(__name__)

_FORWARDED_HEADERS = ("Content-Type", "Authorization", "Accept")
_RELAYED_HEADERS = ("Retry-After",)

UPSTREAM_URL_KEY = web.AppKey("upstream_url", str)
UPSTREAM_SESSION_KEY = web.AppKey("upstream_session", aiohttp.ClientSession)


async def forward(request: web.Request) -> web.StreamResponse:
    session: aiohttp.ClientSession = request.app[UPSTREAM_SESSION_KEY]
    upstream_url: str = request.app[UPSTREAM_URL_KEY]
    url = upstream_url + request.rel_url.path_qs
    body = await request.read()
    headers = {name: request.headers[name] for name in _FORWARDED_HEADERS if name in request.headers}

    try:
        async with session.request(
            request.method, url, data=body or None, headers=headers
        ) as upstream:
            if upstream.content_type == "text/event-stream":
                response = web.StreamResponse(status=upstream.status, headers=SSE_HEADERS)
                await response.prepare(request)
                try:
                    async for data in upstream.content.iter_any():
                        await response.write(data)
                except ConnectionResetError:
                    logger.info("Client disconnected from proxied stream", extra={"url": url})
                    return response
                await response.write_eof()
                return response

            payload = await upstream.read()
            relayed = {name: upstream.headers[name] for name in _RELAYED_HEADERS if name in upstream.headers}
            return web.Response(
                status=upstream.status,
                body=payload,
                content_type=upstream.content_type,
                headers=relayed or None,
            )
    except aiohttp.ClientError as exc:
        logger.warning("Execution tier unreachable: %s", exc, extra={"url": url})
        return web.json_response(
            {"success": False, "error": "Execution tier is unavailable", "kind": "upstream_unavailable"},
            status=502,
        )


def create_proxy_app(upstream_url: str, *, connect_timeout: float = 10.0) -> web.Application:
    """Build a gateway that relays requests and event streams byte-for-byte."""

    app = web.Application()
    app[UPSTREAM_URL_KEY] = upstream_url.rstrip("/")

    async def _client_session(app: web.Application) -> AsyncIterator[None]:
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=connect_timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            app[UPSTREAM_SESSION_KEY] = session
            yield

    app.cleanup_ctx.append(_client_session)
    app.add_routes(
        [
            web.get("/api/health", forward),
            web.post("/api/workspace/chat", forward),
            web.get("/api/workspace/git/status", forward),
            web.post("/api/workspace/git/commit", forward),
            web.post("/api/workspace/git/push", forward),
        ]
    )
    return app


__all__ = ["UPSTREAM_SESSION_KEY", "UPSTREAM_URL_KEY", "create_proxy_app", "forward"]
