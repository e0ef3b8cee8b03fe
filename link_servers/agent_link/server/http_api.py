"""Full HTTP API (GET, POST, CORS preflight) on its own port.

The WebSocket listener can only answer GET requests, so the JSON POST routes
and the OPTIONS preflight live here. Routing and dispatch are shared with
`LinkGateway.handle_http`.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from aiohttp import web

from .gateway import CORS_HEADERS, LinkGateway

logger = logging.getLogger("agent_link.http")


async def _read_json_body(request: web.Request) -> dict[str, Any]:
    """Request body as a JSON object; empty or malformed bodies read as {}."""
    raw = await request.read()
    if not raw:
        return {}
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


@web.middleware
async def _cors_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    response = await handler(request)
    response.headers.update(CORS_HEADERS)
    return response


class LinkHttpApi:
    def __init__(self, gateway: LinkGateway, *, host: str = "127.0.0.1", port: int = 10000) -> None:
        self.gateway = gateway
        self.host = host
        self.port = int(port)
        self._runner: web.AppRunner | None = None

    @property
    def listening(self) -> bool:
        return self._runner is not None

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[_cors_middleware])
        app.router.add_route("*", "/{tail:.*}", self.handle_api)
        return app

    async def start(self) -> None:
        if self._runner is not None:
            return
        runner = web.AppRunner(self.build_app(), access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        addresses = runner.addresses
        if addresses:
            self.port = int(addresses[0][1])
        logger.info("http_api_listening host=%s port=%s", self.host, self.port)

    async def stop(self) -> None:
        runner = self._runner
        self._runner = None
        if runner is not None:
            await runner.cleanup()
            logger.info("http_api_stopped")

    async def handle_api(self, request: web.Request) -> web.Response:
        if request.method == "OPTIONS":
            return web.Response(status=204)
        body = await _read_json_body(request) if request.method == "POST" else {}
        status, payload = await self.gateway.handle_http(request.method, request.path, body)
        response = web.json_response(payload, status=status, dumps=lambda obj: json.dumps(obj, ensure_ascii=False))
        response.headers["Cache-Control"] = "no-store"
        return response
