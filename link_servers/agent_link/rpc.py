"""Request/response correlation over one persistent WebSocket.

Every outgoing call gets a fresh integer id and a future registered in the
pending map. A single reader task resolves futures from inbound frames; the
event loop's timer expires calls whose deadline passes first. Closing the
socket rejects whatever is still pending, exactly once per call.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .http_client import ProtocolError, RpcCallError, RpcConnectionError, RpcTimeoutError

logger = logging.getLogger("agent_link.rpc")


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "agent-link requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class PendingCall:
    id: int
    method: str
    timeout: float
    deadline: float
    future: asyncio.Future
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)


def decode_frame(raw: Any) -> dict[str, Any]:
    """Parse one inbound frame; raise ProtocolError for anything unusable."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError("frame is not utf-8") from exc
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"frame is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ProtocolError("frame is not an object")
    return data


class RpcConnection:
    """Owns the socket, the correlation-id counter and the pending-call map."""

    def __init__(self, *, default_timeout: float = 10.0, open_timeout: float = 5.0) -> None:
        self.default_timeout = float(default_timeout)
        self.open_timeout = float(open_timeout)
        self.endpoint: str | None = None

        self._ws: Any | None = None
        self._reader: asyncio.Task | None = None
        self._connecting = False

        # Ids are never reused for the lifetime of this object, across reconnects too.
        self._next_id = 1
        self._pending: dict[int, PendingCall] = {}

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        if self._connecting:
            return ConnectionState.CONNECTING
        if self._ws is not None:
            return ConnectionState.CONNECTED
        return ConnectionState.DISCONNECTED

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def connect(self, endpoint: str) -> None:
        """Open `endpoint`; on success the previous connection (if any) is torn down first."""
        websockets = _import_websockets()
        self._connecting = True
        try:
            ws = await websockets.connect(
                endpoint,
                ping_interval=None,
                open_timeout=self.open_timeout,
                max_size=None,
            )
        except Exception as exc:  # noqa: BLE001
            raise RpcConnectionError(f"connect failed ({endpoint}): {exc}") from exc
        finally:
            self._connecting = False

        if self._ws is not None:
            logger.info("rpc_superseded endpoint=%s", self.endpoint)
            await self.disconnect()

        self._ws = ws
        self.endpoint = endpoint
        self._reader = asyncio.create_task(self._read_loop(ws), name="agent-link-rpc-reader")
        logger.info("rpc_connected endpoint=%s", endpoint)

    async def disconnect(self) -> None:
        """Close the socket (if open) and reject everything pending. Safe to call repeatedly."""
        ws = self._ws
        reader = self._reader
        self._ws = None
        self._reader = None
        self._reject_all("connection closed")

        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await reader

    # ─────────────────────────────────────────────────────────────────────────
    # Calls
    # ─────────────────────────────────────────────────────────────────────────

    async def call(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> Any:
        ws = self._ws
        if ws is None:
            raise RpcConnectionError(f"not connected (method={method})")

        loop = asyncio.get_running_loop()
        limit = self.default_timeout if timeout is None else max(0.0, float(timeout))

        call_id = self._next_id
        self._next_id += 1
        pending = PendingCall(
            id=call_id,
            method=method,
            timeout=limit,
            deadline=loop.time() + limit,
            future=loop.create_future(),
        )
        pending.timer = loop.call_later(limit, self._expire, call_id)
        self._pending[call_id] = pending

        frame = {"id": call_id, "method": method, "params": params or {}}
        try:
            await ws.send(json.dumps(frame, ensure_ascii=False))
        except Exception as exc:  # noqa: BLE001
            self._settle(call_id, error=RpcConnectionError(f"send failed (method={method}): {exc}"))

        try:
            return await pending.future
        except asyncio.CancelledError:
            self._drop(call_id)
            raise

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                self._on_frame(raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.info("rpc_reader_stopped reason=%s", exc)
        finally:
            if self._ws is ws:
                self._ws = None
                self._reader = None
                self._reject_all("connection closed")
                logger.info("rpc_closed endpoint=%s", self.endpoint)

    def _on_frame(self, raw: Any) -> None:
        try:
            frame = decode_frame(raw)
        except ProtocolError as exc:
            logger.debug("rpc_frame_dropped reason=%s", exc)
            return

        call_id = frame.get("id")
        if not isinstance(call_id, int) or isinstance(call_id, bool):
            # Events and anything without a usable id.
            return
        if call_id not in self._pending:
            logger.debug("rpc_late_response id=%s", call_id)
            return

        err = frame.get("error")
        if err is not None:
            message = err.get("message") if isinstance(err, dict) else None
            self._settle(call_id, error=RpcCallError(str(message or err)))
            return
        self._settle(call_id, result=frame.get("result"))

    def _expire(self, call_id: int) -> None:
        pending = self._pending.get(call_id)
        if pending is None:
            return
        limit_ms = int(round(pending.timeout * 1000))
        self._settle(call_id, error=RpcTimeoutError(f"{pending.method} timed out ({limit_ms}ms)"))

    def _settle(self, call_id: int, *, result: Any = None, error: BaseException | None = None) -> None:
        pending = self._drop(call_id)
        if pending is None or pending.future.done():
            return
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(result)

    def _drop(self, call_id: int) -> PendingCall | None:
        pending = self._pending.pop(call_id, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()
        return pending

    def _reject_all(self, reason: str) -> None:
        for call_id in list(self._pending):
            self._settle(call_id, error=RpcConnectionError(reason))
