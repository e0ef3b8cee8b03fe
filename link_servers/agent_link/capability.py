"""Named-operation client for the in-page capability surface.

The surface lives on the remote page and disappears whenever the page
reloads, so every named call re-probes it first and re-installs it when it
is missing or stale. Raw input (key events, text insertion) bypasses the
surface and goes straight to the transport's input primitives.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from .bridge_script import BRIDGE_GLOBAL, BRIDGE_PROBE_EXPRESSION, BRIDGE_SCRIPT_SOURCE, BRIDGE_SCRIPT_VERSION
from .http_client import CapabilityError, RpcCallError

if TYPE_CHECKING:
    from .rpc import RpcConnection

logger = logging.getLogger("agent_link.capability")

EVALUATE_METHOD = "Runtime.evaluate"
DISPATCH_KEY_EVENT_METHOD = "Input.dispatchKeyEvent"
INSERT_TEXT_METHOD = "Input.insertText"

# Modifier bitmask (1=Alt, 2=Ctrl, 4=Meta, 8=Shift)
MODIFIER_ALT = 1
MODIFIER_CTRL = 2
MODIFIER_META = 4
MODIFIER_SHIFT = 8


@dataclass(frozen=True)
class KeyEvent:
    type: str  # "keyDown" | "keyUp"
    key: str
    code: str
    modifiers: int = 0

    def to_params(self) -> dict[str, Any]:
        return {"type": self.type, "key": self.key, "code": self.code, "modifiers": int(self.modifiers)}


def key_press(key: str, code: str, modifiers: int = 0) -> tuple[KeyEvent, KeyEvent]:
    """keyDown + keyUp pair for one key combination."""
    return (KeyEvent("keyDown", key, code, modifiers), KeyEvent("keyUp", key, code, modifiers))


SELECT_ALL = key_press("a", "KeyA", MODIFIER_CTRL)
DELETE_BACKWARD = key_press("Backspace", "Backspace")


@dataclass(frozen=True)
class OperationSpec:
    name: str
    result: type
    args: tuple[type, ...] = ()

    def check_args(self, args: tuple[Any, ...]) -> None:
        if len(args) != len(self.args):
            raise TypeError(f"{self.name}() takes {len(self.args)} argument(s), got {len(args)}")
        for value, expected in zip(args, self.args, strict=True):
            if not isinstance(value, expected):
                raise TypeError(f"{self.name}() expected {expected.__name__}, got {type(value).__name__}")

    def check_result(self, value: Any) -> Any:
        if not isinstance(value, self.result):
            raise CapabilityError(
                f"{self.name} returned {type(value).__name__}, expected {self.result.__name__}"
            )
        return value


class Operation(Enum):
    """Closed set of operations exposed by the in-page capability surface."""

    FIND_INPUT = OperationSpec("findInput", dict)
    FOCUS_INPUT = OperationSpec("focusInput", dict)
    GET_INPUT_TEXT = OperationSpec("getInputText", str)
    IS_SEND_VISIBLE = OperationSpec("isSendVisible", bool)
    CLICK_SEND = OperationSpec("clickSend", dict)
    GET_LAST_BOT_TEXT = OperationSpec("getLastBotText", dict)
    GET_MESSAGES = OperationSpec("getMessages", list)
    CHECK_ERROR = OperationSpec("checkError", dict)
    DIAGNOSE = OperationSpec("diagnose", list)

    @property
    def spec(self) -> OperationSpec:
        return self.value

    def expression(self, *args: Any) -> str:
        arg_src = ", ".join(json.dumps(a, ensure_ascii=False) for a in args)
        return f"JSON.stringify(globalThis.{BRIDGE_GLOBAL}.{self.spec.name}({arg_src}))"


@dataclass(frozen=True)
class CapabilitySession:
    present: bool = False
    version: int | None = None

    @property
    def is_current(self) -> bool:
        return self.present and self.version == BRIDGE_SCRIPT_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {"present": self.present, "version": self.version}


def _exception_text(details: dict[str, Any]) -> str:
    exc = details.get("exception")
    if isinstance(exc, dict) and isinstance(exc.get("description"), str):
        return exc["description"].splitlines()[0]
    return str(details.get("text") or "remote evaluation threw")


class RemoteCapabilityClient:
    def __init__(self, connection: RpcConnection, *, timeout: float | None = None) -> None:
        self.conn = connection
        self.timeout = timeout
        self.session = CapabilitySession()
        self.injections = 0

    # ─────────────────────────────────────────────────────────────────────────
    # Evaluation
    # ─────────────────────────────────────────────────────────────────────────

    async def evaluate(self, expression: str, *, timeout: float | None = None) -> Any:
        """Evaluate `expression` in the page and return its value (undefined/null -> None)."""
        res = await self.conn.call(
            EVALUATE_METHOD,
            {"expression": expression, "returnByValue": True, "awaitPromise": True},
            timeout=timeout if timeout is not None else self.timeout,
        )
        if not isinstance(res, dict):
            raise CapabilityError("malformed evaluation result")
        details = res.get("exceptionDetails")
        if isinstance(details, dict):
            raise CapabilityError(_exception_text(details))
        value = res.get("result")
        if not isinstance(value, dict):
            return None
        if value.get("type") == "undefined" or value.get("subtype") == "null":
            return None
        return value.get("value")

    async def _evaluate_json(self, expression: str) -> Any:
        raw = await self.evaluate(expression)
        if not isinstance(raw, str):
            return raw
        try:
            return json.loads(raw)
        except ValueError:
            return raw

    # ─────────────────────────────────────────────────────────────────────────
    # Session
    # ─────────────────────────────────────────────────────────────────────────

    async def probe(self) -> CapabilitySession:
        """Cheap read-only liveness check; evaluation failures read as absent."""
        try:
            data = await self._evaluate_json(BRIDGE_PROBE_EXPRESSION)
        except (CapabilityError, RpcCallError) as exc:
            logger.debug("capability_probe_failed reason=%s", exc)
            return CapabilitySession()
        if not isinstance(data, dict):
            return CapabilitySession()
        version = data.get("version")
        return CapabilitySession(
            present=data.get("present") is True,
            version=version if isinstance(version, int) and not isinstance(version, bool) else None,
        )

    async def ensure_capability(self) -> CapabilitySession:
        session = await self.probe()
        if session.is_current:
            self.session = session
            return session

        data = await self._evaluate_json(BRIDGE_SCRIPT_SOURCE)
        if not isinstance(data, dict) or data.get("version") != BRIDGE_SCRIPT_VERSION:
            self.session = CapabilitySession()
            raise CapabilityError(f"capability injection failed: {data!r}")

        if data.get("injected") is True:
            self.injections += 1
            logger.info("capability_injected version=%s previous=%s", BRIDGE_SCRIPT_VERSION, session.version)
        else:
            logger.info("capability_already_present version=%s", BRIDGE_SCRIPT_VERSION)
        self.session = CapabilitySession(present=True, version=BRIDGE_SCRIPT_VERSION)
        return self.session

    # ─────────────────────────────────────────────────────────────────────────
    # Operations
    # ─────────────────────────────────────────────────────────────────────────

    async def invoke(self, operation: Operation, *args: Any) -> Any:
        spec = operation.spec
        spec.check_args(args)
        await self.ensure_capability()
        value = await self._evaluate_json(operation.expression(*args))
        if value is None:
            raise CapabilityError(f"{spec.name} returned nothing")
        return spec.check_result(value)

    async def dispatch_key_event(self, event: KeyEvent) -> None:
        await self.conn.call(DISPATCH_KEY_EVENT_METHOD, event.to_params(), timeout=self.timeout)

    async def press(self, combo: tuple[KeyEvent, ...]) -> None:
        for event in combo:
            await self.dispatch_key_event(event)

    async def insert_text(self, text: str) -> None:
        await self.conn.call(INSERT_TEXT_METHOD, {"text": text}, timeout=self.timeout)
