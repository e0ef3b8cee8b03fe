"""Compose, submit, and wait for the remote agent to finish.

The only completion signal the page offers is the visibility of the Send
control: hidden while the agent works, shown again when it is idle. That
signal flickers, so an idle observation only counts after it survives a
debounce recheck, and a fresh reply must be readable before the turn is
reported as completed.

Phases of one submit-and-wait round:

    Idle -> Composing -> Submitting -> AwaitingStart -> AwaitingCompletion
         -> Completed | Failed | TimedOut -> Idle

The orchestrator keeps no state between calls. It does not serialize
overlapping calls itself; the caller owns that.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .capability import DELETE_BACKWARD, SELECT_ALL, Operation, RemoteCapabilityClient
from .clock import Clock, SystemClock
from .config import SendTimings
from .http_client import CapabilityError, LinkError, RpcConnectionError
from .types import ActionResult, ReplyOutcome, ReplyStatus

logger = logging.getLogger("agent_link.orchestrator")

SUBMIT_NOT_FOUND = "submit control not found after retries"


class SendPhase(str, Enum):
    IDLE = "idle"
    COMPOSING = "composing"
    SUBMITTING = "submitting"
    AWAITING_START = "awaitingStart"
    AWAITING_COMPLETION = "awaitingCompletion"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timedOut"


@dataclass
class ReplyWaitSession:
    started_at: float
    timeout: float
    poll_interval: float
    baseline_count: int = 0
    phase: SendPhase = SendPhase.AWAITING_START


class SendOrchestrator:
    def __init__(
        self,
        capability: RemoteCapabilityClient,
        *,
        timings: SendTimings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.capability = capability
        self.timings = timings or SendTimings()
        self.clock = clock or SystemClock()
        self.phase = SendPhase.IDLE

    # ─────────────────────────────────────────────────────────────────────────
    # Signals
    # ─────────────────────────────────────────────────────────────────────────

    async def is_send_visible(self) -> bool:
        return bool(await self.capability.invoke(Operation.IS_SEND_VISIBLE))

    async def last_reply(self) -> tuple[str, int]:
        data = await self.capability.invoke(Operation.GET_LAST_BOT_TEXT)
        text = data.get("text")
        count = data.get("count")
        return (
            text if isinstance(text, str) else "",
            count if isinstance(count, int) and not isinstance(count, bool) else 0,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Composition
    # ─────────────────────────────────────────────────────────────────────────

    async def wait_for_idle(self, timeout: float | None = None) -> ActionResult:
        """Poll the Send control until it is visible or `timeout` elapses."""
        limit = self.timings.idle_timeout if timeout is None else float(timeout)
        start = self.clock.monotonic()
        try:
            while self.clock.monotonic() - start < limit:
                if await self.is_send_visible():
                    return ActionResult.ok()
                await self.clock.sleep(self.timings.idle_poll_interval)
        except RpcConnectionError:
            raise
        except LinkError as exc:
            return ActionResult.fail(str(exc))
        return ActionResult.fail(f"waitForIdle timed out ({int(limit * 1000)}ms)")

    async def compose(self, text: str) -> ActionResult:
        """Replace the editor contents with `text` using native input events."""
        self.phase = SendPhase.COMPOSING
        try:
            return await self._compose(text)
        except RpcConnectionError:
            raise
        except LinkError as exc:
            return ActionResult.fail(str(exc))
        finally:
            self.phase = SendPhase.IDLE

    async def _compose(self, text: str) -> ActionResult:
        cap = self.capability
        # Scripted DOM writes do not clear a rich-text editor; select-all + delete does.
        await cap.invoke(Operation.FOCUS_INPUT)
        await cap.press(SELECT_ALL)
        await cap.press(DELETE_BACKWARD)
        await self.clock.sleep(self.timings.clear_settle)

        focus = await cap.invoke(Operation.FOCUS_INPUT)
        if focus.get("success") is not True:
            return ActionResult.fail(str(focus.get("error") or "focus failed"))

        await cap.insert_text(text)
        await self.clock.sleep(self.timings.insert_settle)

        actual = await cap.invoke(Operation.GET_INPUT_TEXT)
        matched = actual.strip() == text.strip()
        if not matched:
            logger.warning("compose_readback_mismatch expected_len=%d actual_len=%d", len(text), len(actual))
        return ActionResult.ok(actual, matched=matched)

    async def submit(self, retries: int | None = None) -> ActionResult:
        """Click Send, retrying while the control is missing."""
        attempts = max(1, int(self.timings.submit_retries if retries is None else retries))
        self.phase = SendPhase.SUBMITTING
        try:
            return await self._submit(attempts)
        except RpcConnectionError:
            raise
        except LinkError as exc:
            return ActionResult.fail(str(exc))
        finally:
            self.phase = SendPhase.IDLE

    async def _submit(self, attempts: int) -> ActionResult:
        for attempt in range(attempts):
            try:
                res = await self.capability.invoke(Operation.CLICK_SEND)
            except CapabilityError as exc:
                # Any capability failure counts as a missed attempt, not only a missing control.
                res = {"success": False, "error": str(exc)}
            if res.get("success") is True:
                if attempt:
                    logger.info("submit_ok attempt=%d", attempt + 1)
                return ActionResult.ok()
            logger.debug("submit_retry attempt=%d error=%s", attempt + 1, res.get("error"))
            if attempt < attempts - 1:
                await self.clock.sleep(self.timings.submit_backoff)
        return ActionResult.fail(SUBMIT_NOT_FOUND)

    async def compose_and_submit(self, text: str, inter_message_delay: float | None = None) -> ActionResult:
        delay = self.timings.inter_message_delay if inter_message_delay is None else float(inter_message_delay)

        idle = await self.wait_for_idle()
        if not idle.success:
            # The submit retries below still guard against a busy agent.
            logger.warning("compose_while_busy reason=%s", idle.error)

        composed = await self.compose(text)
        if not composed.success:
            return composed
        await self.clock.sleep(delay)

        sent = await self.submit()
        if not sent.success:
            return ActionResult.fail(sent.error or SUBMIT_NOT_FOUND, text=text)
        return ActionResult.ok(text)

    # ─────────────────────────────────────────────────────────────────────────
    # Completion detection
    # ─────────────────────────────────────────────────────────────────────────

    async def wait_for_completion(
        self,
        timeout: float | None = None,
        poll_interval: float | None = None,
    ) -> ReplyOutcome:
        wait = ReplyWaitSession(
            started_at=self.clock.monotonic(),
            timeout=self.timings.reply_timeout if timeout is None else float(timeout),
            poll_interval=self.timings.reply_poll_interval if poll_interval is None else float(poll_interval),
        )
        try:
            outcome = await self._wait_for_completion(wait)
        except RpcConnectionError:
            raise
        except LinkError as exc:
            outcome = ReplyOutcome(ReplyStatus.FAILED, error=str(exc), elapsed=self._elapsed(wait))
        finally:
            self.phase = SendPhase.IDLE

        logger.info(
            "reply_wait_done status=%s elapsed=%s baseline=%d",
            outcome.status.value,
            outcome.elapsed,
            wait.baseline_count,
        )
        return outcome

    def _elapsed(self, wait: ReplyWaitSession) -> int:
        # Half-seconds round up.
        return int(self.clock.monotonic() - wait.started_at + 0.5)

    def _set_phase(self, wait: ReplyWaitSession, phase: SendPhase) -> None:
        wait.phase = phase
        self.phase = phase

    async def _wait_for_completion(self, wait: ReplyWaitSession) -> ReplyOutcome:
        t = self.timings
        _, wait.baseline_count = await self.last_reply()

        # Soft bound: a fast agent may finish before the busy state is ever observed.
        self._set_phase(wait, SendPhase.AWAITING_START)
        while self.clock.monotonic() - wait.started_at < t.start_timeout:
            if not await self.is_send_visible():
                break
            await self.clock.sleep(t.start_poll_interval)

        self._set_phase(wait, SendPhase.AWAITING_COMPLETION)
        while self.clock.monotonic() - wait.started_at < wait.timeout:
            await self.clock.sleep(wait.poll_interval)
            # Reported elapsed time is taken at the idle observation, before the debounce.
            observed = self._elapsed(wait)
            if not await self.is_send_visible():
                continue

            await self.clock.sleep(t.debounce)
            if not await self.is_send_visible():
                logger.debug("idle_flicker elapsed=%.1f", self.clock.monotonic() - wait.started_at)
                continue

            banner = await self.capability.invoke(Operation.CHECK_ERROR)
            if banner.get("hasError") is True:
                self._set_phase(wait, SendPhase.FAILED)
                return ReplyOutcome(
                    ReplyStatus.FAILED,
                    error=str(banner.get("errorText") or "remote agent reported an error"),
                    elapsed=observed,
                )

            text, count = await self.last_reply()
            if self._accepts(text, count, wait.baseline_count):
                self._set_phase(wait, SendPhase.COMPLETED)
                return ReplyOutcome(ReplyStatus.COMPLETED, reply=text, elapsed=observed)

        self._set_phase(wait, SendPhase.TIMED_OUT)
        snapshot: str | None = None
        try:
            text, _ = await self.last_reply()
            snapshot = text or None
        except RpcConnectionError:
            raise
        except LinkError as exc:
            logger.debug("reply_snapshot_failed reason=%s", exc)
        return ReplyOutcome(
            ReplyStatus.TIMED_OUT,
            reply=snapshot,
            error=f"reply timed out ({int(wait.timeout * 1000)}ms)",
            elapsed=self._elapsed(wait),
        )

    def _accepts(self, text: str, count: int, baseline: int) -> bool:
        if count > baseline and text:
            return True
        # Known-permissive: an unchanged (possibly stale) non-empty reply is accepted too.
        return bool(text) and not self.timings.require_new_reply

    def describe(self) -> dict[str, Any]:
        return {"phase": self.phase.value, "timings": self.timings.to_dict()}
