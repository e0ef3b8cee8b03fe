from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import TYPE_CHECKING, Any

from ..http_client import LinkError
from ..rpc import _import_websockets

if TYPE_CHECKING:
    from ..link import AgentLink

logger = logging.getLogger("agent_link.gateway")

GATEWAY_ACTIONS = (
    "status",
    "setText",
    "pressEnter",
    "send",
    "sendText",
    "evaluate",
    "waitForIdle",
    "waitForReply",
    "messages",
    "lastReply",
    "diagnose",
)

HTTP_ROUTES: dict[str, dict[str, str]] = {
    "GET": {
        "/api/status": "status",
        "/api/messages": "messages",
        "/api/lastReply": "lastReply",
        "/api/diagnose": "diagnose",
    },
    "POST": {
        "/api/send": "send",
        "/api/setText": "setText",
        "/api/pressEnter": "pressEnter",
        "/api/evaluate": "evaluate",
        "/api/waitForReply": "waitForReply",
    },
}

# These already answer with {success, ...}; everything else is wrapped in {success, data}.
UNWRAPPED_HTTP_ACTIONS = frozenset({"send", "waitForReply"})

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


class GatewayRequestError(ValueError):
    """Bad request parameters (missing text, unknown action, ...)."""


def _seconds(msg: dict[str, Any], key: str) -> float | None:
    """Read an optional millisecond field and return seconds."""
    raw = msg.get(key)
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw < 0:
        raise GatewayRequestError(f"'{key}' must be a non-negative number of milliseconds")
    return float(raw) / 1000.0


def _require_text(msg: dict[str, Any], *, allow_empty: bool = False) -> str:
    text = msg.get("text")
    if not isinstance(text, str) or (not text and not allow_empty):
        raise GatewayRequestError("missing 'text' parameter")
    return text


class LinkGateway:
    """Local WebSocket + HTTP front-end for an AgentLink.

    - WebSocket (any path): JSON `{action, id?, ...}` requests, one task per request.
    - HTTP GET on the same port: read-only `/api/*` routes (POST and OPTIONS are on LinkHttpApi).
    """

    def __init__(self, link: AgentLink, *, host: str = "127.0.0.1", port: int = 9999) -> None:
        self.link = link
        self.host = host
        self.port = int(port)
        self._server: Any | None = None
        self._clients: set[Any] = set()
        self._tasks: set[asyncio.Task] = set()

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def listening(self) -> bool:
        return self._server is not None

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def start(self) -> None:
        if self._server is not None:
            return
        websockets = _import_websockets()
        self._server = await websockets.serve(
            self._handler,
            self.host,
            self.port,
            process_request=self._process_request,
            ping_interval=None,
            max_size=2_000_000,
        )
        with contextlib.suppress(Exception):
            self.port = int(list(self._server.sockets)[0].getsockname()[1])
        logger.info("gateway_listening host=%s port=%s", self.host, self.port)

    async def stop(self) -> None:
        server = self._server
        self._server = None
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if server is not None:
            server.close()
            with contextlib.suppress(Exception):
                await server.wait_closed()
            logger.info("gateway_stopped")

    # ─────────────────────────────────────────────────────────────────────────
    # Dispatch
    # ─────────────────────────────────────────────────────────────────────────

    async def dispatch(self, action: str, msg: dict[str, Any]) -> Any:
        link = self.link
        if action == "status":
            return {**link.status(), "wsClients": self.client_count}
        if action == "setText":
            return await link.set_text(_require_text(msg, allow_empty=True))
        if action == "pressEnter":
            return await link.press_enter()
        if action == "send":
            return await link.send_and_wait(_require_text(msg), _seconds(msg, "delay"), _seconds(msg, "timeout"))
        if action == "sendText":
            return await link.send_text(_require_text(msg), _seconds(msg, "delay"))
        if action == "evaluate":
            expression = msg.get("expression")
            if not isinstance(expression, str) or not expression.strip():
                raise GatewayRequestError("missing 'expression' parameter")
            return await link.evaluate(expression, _seconds(msg, "timeout"))
        if action == "waitForIdle":
            return await link.wait_for_idle(_seconds(msg, "timeout"))
        if action == "waitForReply":
            return await link.wait_for_reply(_seconds(msg, "timeout"), _seconds(msg, "pollInterval"))
        if action == "messages":
            return await link.get_messages()
        if action == "lastReply":
            return {"reply": await link.get_last_bot_reply()}
        if action == "diagnose":
            return await link.diagnose()
        raise GatewayRequestError(f"unknown action: {action}")

    async def _handle_request(self, ws: Any, raw: Any) -> None:
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            msg = None
        if not isinstance(msg, dict):
            await self._reply(ws, {"success": False, "error": "invalid JSON"})
            return

        req_id = msg.get("id")
        action = str(msg.get("action") or "")
        try:
            data = await self.dispatch(action, msg)
        except asyncio.CancelledError:
            raise
        except (GatewayRequestError, LinkError) as exc:
            await self._reply(ws, {"success": False, "error": str(exc), "id": req_id})
            return
        except Exception as exc:  # noqa: BLE001
            logger.exception("gateway_action_failed action=%s", action)
            await self._reply(ws, {"success": False, "error": str(exc), "id": req_id})
            return
        await self._reply(ws, {"success": True, "data": data, "id": req_id})

    async def _reply(self, ws: Any, payload: dict[str, Any]) -> None:
        with contextlib.suppress(Exception):
            await ws.send(json.dumps(payload, ensure_ascii=False))

    # ─────────────────────────────────────────────────────────────────────────
    # Transport
    # ─────────────────────────────────────────────────────────────────────────

    async def _handler(self, ws: Any) -> None:
        self._clients.add(ws)
        logger.info("gateway_client_connected clients=%d", len(self._clients))
        try:
            await self._reply(
                ws,
                {"type": "welcome", "cdpConnected": self.link.connected, "actions": list(GATEWAY_ACTIONS)},
            )
            async for raw in ws:
                task = asyncio.create_task(self._handle_request(ws, raw))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        except Exception as exc:  # noqa: BLE001
            logger.debug("gateway_client_error reason=%s", exc)
        finally:
            self._clients.discard(ws)
            logger.info("gateway_client_disconnected clients=%d", len(self._clients))

    # ─────────────────────────────────────────────────────────────────────────
    # HTTP
    # ─────────────────────────────────────────────────────────────────────────

    async def handle_http(self, method: str, path: str, body: dict[str, Any] | None = None) -> tuple[int, Any]:
        """Route one HTTP API request; returns (status, JSON payload)."""
        action = HTTP_ROUTES.get(method.upper(), {}).get(path)
        if action is None:
            return 404, {"success": False, "error": f"unknown route: {method.upper()} {path}"}
        try:
            data = await self.dispatch(action, body or {})
        except asyncio.CancelledError:
            raise
        except GatewayRequestError as exc:
            return 400, {"success": False, "error": str(exc)}
        except Exception as exc:  # noqa: BLE001
            if not isinstance(exc, LinkError):
                logger.exception("gateway_http_failed method=%s path=%s", method, path)
            return 500, {"success": False, "error": str(exc)}
        if action in UNWRAPPED_HTTP_ACTIONS:
            return 200, data
        return 200, {"success": True, "data": data}

    async def _process_request(self, _conn: Any, request: Any) -> Any:
        # websockets 14+ exposes HTTP types via websockets.http11
        from websockets.datastructures import Headers as WsHeaders  # type: ignore[import-not-found]
        from websockets.http11 import Response as WsResponse  # type: ignore[import-not-found]

        try:
            upgrade = str(request.headers.get("Upgrade") or "").lower()
        except Exception:
            upgrade = ""
        if upgrade == "websocket":
            return None

        # The WebSocket listener only parses GET requests; POST and OPTIONS go to LinkHttpApi.
        path = str(getattr(request, "path", "") or "").split("?", 1)[0]
        status, payload = await self.handle_http("GET", path)

        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        headers = WsHeaders()
        headers["Content-Type"] = "application/json; charset=utf-8"
        headers["Content-Length"] = str(len(body))
        headers["Cache-Control"] = "no-store"
        for name, value in CORS_HEADERS.items():
            headers[name] = value
        reason = {200: "OK", 400: "Bad Request", 404: "Not Found"}.get(status, "Internal Server Error")
        return WsResponse(status, reason, headers, body)
