from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from link_servers.agent_link.capability import DELETE_BACKWARD, SELECT_ALL, KeyEvent, Operation
from link_servers.agent_link.config import SendTimings
from link_servers.agent_link.http_client import CapabilityError, RpcCallError, RpcConnectionError, RpcTimeoutError
from link_servers.agent_link.orchestrator import SUBMIT_NOT_FOUND, SendOrchestrator, SendPhase
from link_servers.agent_link.types import ReplyStatus


class FakeClock:
    """Virtual time: sleep() advances `now` instantly."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class ScriptedSurface:
    """Capability surface whose answers are functions of virtual time."""

    def __init__(
        self,
        clock: FakeClock,
        *,
        visible: Callable[[float], bool] = lambda _t: True,
        reply: Callable[[float], dict[str, Any]] = lambda _t: {"text": "", "count": 0},
        error: Callable[[float], dict[str, Any]] = lambda _t: {"hasError": False},
        click: Callable[[float], Any] = lambda _t: {"success": True},
        focus: dict[str, Any] | None = None,
        readback: str | None = None,
    ) -> None:
        self.clock = clock
        self.visible = visible
        self.reply = reply
        self.error = error
        self.click = click
        self.focus = focus if focus is not None else {"success": True}
        self.readback = readback
        self.calls: list[tuple[float, Operation]] = []
        self.events: list[KeyEvent] = []
        self.inserted: list[str] = []
        self.input_text = ""

    async def invoke(self, operation: Operation, *args: Any) -> Any:  # noqa: ARG002
        t = self.clock.now
        self.calls.append((t, operation))
        if operation is Operation.IS_SEND_VISIBLE:
            return self.visible(t)
        if operation is Operation.GET_LAST_BOT_TEXT:
            return self.reply(t)
        if operation is Operation.CHECK_ERROR:
            return self.error(t)
        if operation is Operation.CLICK_SEND:
            res = self.click(t)
            if isinstance(res, Exception):
                raise res
            return res
        if operation is Operation.FOCUS_INPUT:
            return self.focus
        if operation is Operation.GET_INPUT_TEXT:
            return self.readback if self.readback is not None else self.input_text
        raise AssertionError(f"unexpected operation {operation}")

    async def press(self, combo: tuple[KeyEvent, ...]) -> None:
        self.events.extend(combo)

    async def insert_text(self, text: str) -> None:
        self.inserted.append(text)
        self.input_text = text

    def count(self, operation: Operation) -> int:
        return sum(1 for _, op in self.calls if op is operation)


def _orchestrator(surface: ScriptedSurface, clock: FakeClock, **timings: Any) -> SendOrchestrator:
    return SendOrchestrator(surface, timings=SendTimings(**timings), clock=clock)  # type: ignore[arg-type]


# ─────────────────────────────────────────────────────────────────────────────
# Completion detection
# ─────────────────────────────────────────────────────────────────────────────


def test_reply_completes_after_busy_period() -> None:
    clock = FakeClock()
    surface = ScriptedSurface(
        clock,
        visible=lambda t: t >= 3.0,
        reply=lambda t: {"text": "hi", "count": 3} if t >= 3.0 else {"text": "earlier", "count": 2},
    )
    orch = _orchestrator(surface, clock)

    outcome = asyncio.run(orch.wait_for_completion(timeout=20.0, poll_interval=2.0))

    assert outcome.status is ReplyStatus.COMPLETED
    assert outcome.to_dict() == {"success": True, "reply": "hi", "elapsed": 4}
    assert orch.phase is SendPhase.IDLE


def test_flicker_is_ignored_and_error_banner_fails_the_wait() -> None:
    def visible(t: float) -> bool:
        if t < 0.5:
            return True
        if t < 2.5:
            return False
        if t < 3.0:
            return True  # flicker, gone by the debounce recheck
        return t >= 6.0

    clock = FakeClock()
    surface = ScriptedSurface(
        clock,
        visible=visible,
        reply=lambda _t: {"text": "", "count": 1},
        error=lambda t: {"hasError": True, "errorText": "Error: overloaded, please try again"}
        if t >= 6.0
        else {"hasError": False},
    )
    orch = _orchestrator(surface, clock)

    outcome = asyncio.run(orch.wait_for_completion(timeout=20.0, poll_interval=2.0))

    assert outcome.to_dict() == {"success": False, "error": "Error: overloaded, please try again", "elapsed": 6}
    # The flicker never reached the error/reply checks.
    assert [t for t, op in surface.calls if op is Operation.CHECK_ERROR] == [7.5]


def test_never_completes_while_recheck_reports_busy() -> None:
    state = {"n": 0}

    def visible(_t: float) -> bool:
        # Start phase sees busy; afterwards every poll sees idle and every recheck sees busy.
        state["n"] += 1
        return state["n"] > 1 and state["n"] % 2 == 0

    clock = FakeClock()
    surface = ScriptedSurface(clock, visible=visible, reply=lambda _t: {"text": "partial", "count": 5})
    orch = _orchestrator(surface, clock)

    outcome = asyncio.run(orch.wait_for_completion(timeout=12.0, poll_interval=2.0))

    assert outcome.status is ReplyStatus.TIMED_OUT
    assert surface.count(Operation.CHECK_ERROR) == 0
    assert outcome.reply == "partial"


def test_timeout_returns_best_effort_reply() -> None:
    clock = FakeClock()
    surface = ScriptedSurface(clock, visible=lambda _t: False, reply=lambda _t: {"text": "half an ans", "count": 1})
    orch = _orchestrator(surface, clock)

    outcome = asyncio.run(orch.wait_for_completion(timeout=10.0, poll_interval=2.0))

    assert outcome.to_dict() == {
        "success": False,
        "reply": "half an ans",
        "error": "reply timed out (10000ms)",
        "elapsed": 10,
    }
    assert orch.phase is SendPhase.IDLE


def test_timeout_reply_is_none_when_nothing_readable() -> None:
    clock = FakeClock()
    surface = ScriptedSurface(clock, visible=lambda _t: False)
    orch = _orchestrator(surface, clock)

    outcome = asyncio.run(orch.wait_for_completion(timeout=4.0, poll_interval=2.0))

    assert outcome.status is ReplyStatus.TIMED_OUT
    assert outcome.reply is None
    assert outcome.to_dict()["reply"] is None


def test_start_phase_is_a_soft_bound() -> None:
    clock = FakeClock()
    surface = ScriptedSurface(
        clock,
        visible=lambda _t: True,  # busy state never observed
        reply=lambda t: {"text": "quick answer", "count": 2} if t > 0 else {"text": "", "count": 1},
    )
    orch = _orchestrator(surface, clock)

    outcome = asyncio.run(orch.wait_for_completion(timeout=30.0, poll_interval=2.0))

    assert outcome.success
    assert outcome.reply == "quick answer"
    # 5s of start polling (every 0.5s), then one poll interval and the debounce.
    assert clock.now == pytest.approx(8.5)
    assert clock.sleeps[:10] == [0.5] * 10


def test_unchanged_nonempty_reply_is_accepted_by_default() -> None:
    clock = FakeClock()
    surface = ScriptedSurface(clock, visible=lambda t: t >= 1.0, reply=lambda _t: {"text": "stale", "count": 4})

    outcome = asyncio.run(_orchestrator(surface, clock).wait_for_completion(timeout=10.0, poll_interval=2.0))

    assert outcome.success
    assert outcome.reply == "stale"


def test_require_new_reply_rejects_unchanged_reply() -> None:
    clock = FakeClock()
    surface = ScriptedSurface(clock, visible=lambda t: t >= 1.0, reply=lambda _t: {"text": "stale", "count": 4})
    orch = _orchestrator(surface, clock, require_new_reply=True)

    outcome = asyncio.run(orch.wait_for_completion(timeout=10.0, poll_interval=2.0))

    assert outcome.status is ReplyStatus.TIMED_OUT


def test_empty_reply_keeps_polling() -> None:
    clock = FakeClock()
    surface = ScriptedSurface(
        clock,
        visible=lambda t: t >= 1.0,
        reply=lambda t: {"text": "done", "count": 2} if t >= 9.0 else {"text": "", "count": 1 if t == 0 else 2},
    )

    outcome = asyncio.run(_orchestrator(surface, clock).wait_for_completion(timeout=30.0, poll_interval=2.0))

    assert outcome.success
    assert outcome.reply == "done"
    assert surface.count(Operation.CHECK_ERROR) >= 2


def test_capability_failure_during_wait_is_not_retried() -> None:
    clock = FakeClock()

    def error(_t: float) -> dict[str, Any]:
        raise CapabilityError("checkError returned nothing")

    surface = ScriptedSurface(clock, visible=lambda t: t >= 1.0, reply=lambda _t: {"text": "x", "count": 1})
    surface.error = error
    orch = _orchestrator(surface, clock)

    outcome = asyncio.run(orch.wait_for_completion(timeout=30.0, poll_interval=2.0))

    assert outcome.status is ReplyStatus.FAILED
    assert "checkError returned nothing" in (outcome.error or "")
    assert surface.count(Operation.CHECK_ERROR) == 1
    assert orch.phase is SendPhase.IDLE


def test_connection_loss_aborts_the_wait() -> None:
    clock = FakeClock()

    def visible(t: float) -> bool:
        if t >= 4.0:
            raise RpcConnectionError("connection closed")
        return False

    surface = ScriptedSurface(clock, visible=visible)
    orch = _orchestrator(surface, clock)

    with pytest.raises(RpcConnectionError):
        asyncio.run(orch.wait_for_completion(timeout=60.0, poll_interval=2.0))
    assert clock.now < 60.0
    assert orch.phase is SendPhase.IDLE


# ─────────────────────────────────────────────────────────────────────────────
# Idle wait, compose, submit
# ─────────────────────────────────────────────────────────────────────────────


def test_wait_for_idle_polls_until_visible() -> None:
    clock = FakeClock()
    surface = ScriptedSurface(clock, visible=lambda t: t >= 3.0)

    res = asyncio.run(_orchestrator(surface, clock).wait_for_idle(timeout=10.0))

    assert res.to_dict() == {"success": True}
    assert clock.now == 3.0
    assert set(clock.sleeps) == {1.0}


def test_wait_for_idle_times_out() -> None:
    clock = FakeClock()
    surface = ScriptedSurface(clock, visible=lambda _t: False)

    res = asyncio.run(_orchestrator(surface, clock).wait_for_idle(timeout=5.0))

    assert res.to_dict() == {"success": False, "error": "waitForIdle timed out (5000ms)"}


def test_compose_clears_with_native_keys_then_inserts() -> None:
    clock = FakeClock()
    surface = ScriptedSurface(clock)

    res = asyncio.run(_orchestrator(surface, clock).compose("hello agent"))

    assert res.to_dict() == {"success": True, "text": "hello agent", "matched": True}
    assert surface.events == [*SELECT_ALL, *DELETE_BACKWARD]
    assert [e.type for e in surface.events] == ["keyDown", "keyUp", "keyDown", "keyUp"]
    assert surface.inserted == ["hello agent"]
    assert clock.sleeps == [0.05, 0.1]


def test_compose_aborts_when_focus_fails() -> None:
    clock = FakeClock()
    surface = ScriptedSurface(clock, focus={"success": False, "error": "editor not found"})

    res = asyncio.run(_orchestrator(surface, clock).compose("hello"))

    assert res.to_dict() == {"success": False, "error": "editor not found"}
    assert surface.inserted == []


def test_compose_reports_readback_mismatch_softly() -> None:
    clock = FakeClock()
    surface = ScriptedSurface(clock, readback="hel")

    res = asyncio.run(_orchestrator(surface, clock).compose("hello"))

    assert res.success is True
    assert res.text == "hel"
    assert res.matched is False


def test_submit_exhausts_retries_with_fixed_backoff() -> None:
    clock = FakeClock()
    surface = ScriptedSurface(clock, click=lambda _t: {"success": False, "error": "submit control not found"})

    res = asyncio.run(_orchestrator(surface, clock).submit())

    assert res.to_dict() == {"success": False, "error": SUBMIT_NOT_FOUND}
    assert surface.count(Operation.CLICK_SEND) == 10
    assert clock.sleeps == [1.0] * 9


def test_submit_stops_on_first_success() -> None:
    clock = FakeClock()
    surface = ScriptedSurface(
        clock,
        click=lambda t: {"success": True} if t >= 2.0 else CapabilityError("agent panel not found"),
    )

    res = asyncio.run(_orchestrator(surface, clock).submit())

    assert res.success is True
    assert surface.count(Operation.CLICK_SEND) == 3
    assert clock.sleeps == [1.0, 1.0]


def test_compose_and_submit_runs_the_whole_sequence() -> None:
    clock = FakeClock()
    surface = ScriptedSurface(clock)
    orch = _orchestrator(surface, clock)

    res = asyncio.run(orch.compose_and_submit("ship it", inter_message_delay=0.25))

    assert res.to_dict() == {"success": True, "text": "ship it"}
    assert surface.inserted == ["ship it"]
    assert clock.sleeps == [0.05, 0.1, 0.25]
    ops = [op for _, op in surface.calls]
    assert ops[0] is Operation.IS_SEND_VISIBLE
    assert ops[-1] is Operation.CLICK_SEND
    assert orch.phase is SendPhase.IDLE


def test_compose_and_submit_fails_after_retries() -> None:
    clock = FakeClock()
    surface = ScriptedSurface(clock, click=lambda _t: {"success": False})

    res = asyncio.run(_orchestrator(surface, clock).compose_and_submit("hello"))

    assert res.success is False
    assert res.error == SUBMIT_NOT_FOUND
    assert clock.now == pytest.approx(0.05 + 0.1 + 0.3 + 9.0)


def test_submit_timeout_becomes_failed_result() -> None:
    clock = FakeClock()
    surface = ScriptedSurface(clock, click=lambda _t: RpcTimeoutError("Runtime.evaluate timed out (10000ms)"))
    orch = _orchestrator(surface, clock)

    res = asyncio.run(orch.compose_and_submit("x"))

    assert res.to_dict() == {"success": False, "error": "Runtime.evaluate timed out (10000ms)", "text": "x"}
    assert surface.count(Operation.CLICK_SEND) == 1
    assert orch.phase is SendPhase.IDLE


def test_submit_call_error_becomes_failed_result() -> None:
    clock = FakeClock()
    surface = ScriptedSurface(clock, click=lambda _t: RpcCallError("Cannot find context with specified id"))

    res = asyncio.run(_orchestrator(surface, clock).submit())

    assert res.to_dict() == {"success": False, "error": "Cannot find context with specified id"}


def test_submit_lets_connection_loss_through() -> None:
    clock = FakeClock()
    surface = ScriptedSurface(clock, click=lambda _t: RpcConnectionError("connection closed"))

    with pytest.raises(RpcConnectionError):
        asyncio.run(_orchestrator(surface, clock).submit())


def test_submit_retries_any_capability_failure() -> None:
    clock = FakeClock()
    surface = ScriptedSurface(clock, click=lambda _t: CapabilityError("clickSend returned list, expected dict"))

    res = asyncio.run(_orchestrator(surface, clock).submit(retries=3))

    assert res.error == SUBMIT_NOT_FOUND
    assert surface.count(Operation.CLICK_SEND) == 3


def test_elapsed_rounds_half_seconds_up() -> None:
    clock = FakeClock()
    surface = ScriptedSurface(
        clock,
        # Busy only at the first start-phase poll, idle from then on.
        visible=lambda t: t != 0.5,
        reply=lambda t: {"text": "done", "count": 2} if t > 0 else {"text": "", "count": 1},
    )

    outcome = asyncio.run(_orchestrator(surface, clock).wait_for_completion(timeout=20.0, poll_interval=2.0))

    # Idle observed at t=2.5.
    assert outcome.to_dict() == {"success": True, "reply": "done", "elapsed": 3}
