"""AgentLink: one remote agent page behind the gateway operations.

Owns the connection lifecycle (discover -> connect -> install capability)
and exposes the send/wait/read operations as structured results. Mutating
operations share one lock so interleaved requests cannot corrupt the
editor contents.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .capability import Operation, RemoteCapabilityClient
from .clock import Clock, SystemClock
from .config import LinkConfig
from .http_client import LinkError, list_targets, select_target
from .orchestrator import SendOrchestrator
from .rpc import RpcConnection
from .types import ActionResult, ConversationMessage, ReplyOutcome, ReplyStatus

logger = logging.getLogger("agent_link")


class AgentLink:
    def __init__(
        self,
        config: LinkConfig | None = None,
        *,
        connection: RpcConnection | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or LinkConfig.from_env()
        self.clock = clock or SystemClock()
        self.conn = connection or RpcConnection(default_timeout=self.config.rpc_timeout)
        self.capability = RemoteCapabilityClient(self.conn, timeout=self.config.rpc_timeout)
        self.orchestrator = SendOrchestrator(self.capability, timings=self.config.timings, clock=self.clock)
        self.page: dict[str, Any] | None = None
        self._send_lock = asyncio.Lock()

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def connected(self) -> bool:
        return self.conn.connected

    async def connect(self, target: dict[str, Any] | None = None) -> dict[str, Any]:
        if target is None:
            targets = await asyncio.to_thread(list_targets, self.config)
            target = select_target(targets, self.config.target_filter)

        await self.conn.connect(str(target["webSocketDebuggerUrl"]))
        self.page = {
            "id": target.get("id"),
            "title": target.get("title") or "",
            "url": target.get("url") or "",
        }
        logger.info("link_connected title=%s url=%s", self.page["title"], self.page["url"])
        await self.capability.ensure_capability()
        return self.page

    async def connect_with_retry(self) -> dict[str, Any]:
        attempts = max(1, int(self.config.connect_retries))
        last_exc: Exception | None = None
        for attempt in range(attempts):
            if attempt:
                logger.info("link_connect_retry attempt=%d/%d", attempt + 1, attempts)
                await self.clock.sleep(self.config.connect_backoff)
            try:
                return await self.connect()
            except LinkError as exc:
                last_exc = exc
                logger.error("link_connect_failed reason=%s", exc)
        assert last_exc is not None
        raise last_exc

    async def close(self) -> None:
        await self.conn.disconnect()
        self.page = None

    def status(self) -> dict[str, Any]:
        return {
            "connected": self.conn.connected,
            "state": self.conn.state.value,
            "pendingCalls": self.conn.pending_count,
            "page": dict(self.page) if self.page else None,
            "capability": self.capability.session.to_dict(),
            "phase": self.orchestrator.phase.value,
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Send operations
    # ─────────────────────────────────────────────────────────────────────────

    async def set_text(self, text: str) -> dict[str, Any]:
        async with self._send_lock:
            try:
                return (await self.orchestrator.compose(text)).to_dict()
            except LinkError as exc:
                return ActionResult.fail(str(exc)).to_dict()

    async def press_enter(self) -> dict[str, Any]:
        async with self._send_lock:
            try:
                return (await self.orchestrator.submit()).to_dict()
            except LinkError as exc:
                return ActionResult.fail(str(exc)).to_dict()

    async def send_text(self, text: str, inter_message_delay: float | None = None) -> dict[str, Any]:
        async with self._send_lock:
            return await self._send_text(text, inter_message_delay)

    async def _send_text(self, text: str, inter_message_delay: float | None) -> dict[str, Any]:
        try:
            res = await self.orchestrator.compose_and_submit(text, inter_message_delay)
        except LinkError as exc:
            return ActionResult.fail(str(exc)).to_dict()
        out = res.to_dict()
        if res.success:
            out["text"] = text
        return out

    async def send_and_wait(
        self,
        text: str,
        inter_message_delay: float | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send `text`, then wait for the agent's reply, as one serialized request."""
        async with self._send_lock:
            sent = await self._send_text(text, inter_message_delay)
            if not sent.get("success"):
                return {"success": False, "error": sent.get("error")}
            await self.clock.sleep(self.config.timings.post_submit_delay)
            return await self.wait_for_reply(timeout)

    # ─────────────────────────────────────────────────────────────────────────
    # Wait operations
    # ─────────────────────────────────────────────────────────────────────────

    async def wait_for_idle(self, timeout: float | None = None) -> dict[str, Any]:
        try:
            return (await self.orchestrator.wait_for_idle(timeout)).to_dict()
        except LinkError as exc:
            return ActionResult.fail(str(exc)).to_dict()

    async def wait_for_reply(self, timeout: float | None = None, poll_interval: float | None = None) -> dict[str, Any]:
        try:
            outcome = await self.orchestrator.wait_for_completion(timeout, poll_interval)
        except LinkError as exc:
            outcome = ReplyOutcome(ReplyStatus.FAILED, error=str(exc))
        return outcome.to_dict()

    # ─────────────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────────────

    async def get_messages(self) -> list[dict[str, Any]]:
        raw = await self.capability.invoke(Operation.GET_MESSAGES)
        out: list[dict[str, Any]] = []
        for item in raw:
            msg = ConversationMessage.from_provider(item)
            if msg is not None:
                out.append(msg.to_dict())
        return out

    async def get_last_bot_reply(self) -> str | None:
        text, _ = await self.orchestrator.last_reply()
        return text or None

    async def diagnose(self) -> dict[str, Any]:
        inputs = await self.capability.invoke(Operation.DIAGNOSE)
        found = await self.capability.invoke(Operation.FIND_INPUT)
        return {
            "inputs": inputs,
            "editor": found,
            "sendVisible": await self.orchestrator.is_send_visible(),
            "status": self.status(),
        }

    async def evaluate(self, expression: str, timeout: float | None = None) -> Any:
        return await self.capability.evaluate(expression, timeout=timeout)
