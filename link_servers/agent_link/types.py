"""
Result types returned by the send/wait operations.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


@dataclass(slots=True)
class ActionResult:
    """Outcome of a compose/submit/idle-wait step."""

    success: bool
    text: str | None = None
    error: str | None = None
    # Compose only: False when the read-back text differs from what was inserted.
    matched: bool | None = None

    @classmethod
    def ok(cls, text: str | None = None, *, matched: bool | None = None) -> ActionResult:
        return cls(success=True, text=text, matched=matched)

    @classmethod
    def fail(cls, error: str, *, text: str | None = None) -> ActionResult:
        return cls(success=False, text=text, error=error)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.text is not None:
            out["text"] = self.text
        if self.error is not None:
            out["error"] = self.error
        if self.matched is not None:
            out["matched"] = self.matched
        return out


class ReplyStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timedOut"


@dataclass(slots=True)
class ReplyOutcome:
    status: ReplyStatus
    reply: str | None = None
    error: str | None = None
    elapsed: int | None = None  # whole seconds

    @property
    def success(self) -> bool:
        return self.status is ReplyStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.status is ReplyStatus.COMPLETED:
            out["reply"] = self.reply
        elif self.status is ReplyStatus.TIMED_OUT:
            # Best-effort snapshot; may be None.
            out["reply"] = self.reply
        if self.error is not None:
            out["error"] = self.error
        if self.elapsed is not None:
            out["elapsed"] = self.elapsed
        return out


@dataclass(frozen=True, slots=True)
class ConversationMessage:
    role: str  # "user" | "agent"
    text: str

    @classmethod
    def from_provider(cls, raw: Any) -> ConversationMessage | None:
        if not isinstance(raw, dict):
            return None
        kind = raw.get("type") or raw.get("role")
        if kind == "user":
            role = "user"
        elif kind in ("bot", "agent"):
            role = "agent"
        else:
            return None
        return cls(role=role, text=str(raw.get("text") or ""))

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "text": self.text}
