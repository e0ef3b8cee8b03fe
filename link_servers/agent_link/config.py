from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from typing import Any


def _env_float(name: str, default: float, *, lo: float | None = None, hi: float | None = None) -> float:
    try:
        value = float(os.environ.get(name) or default)
    except Exception:
        value = default
    if lo is not None:
        value = max(lo, value)
    if hi is not None:
        value = min(hi, value)
    return value


def _env_int(name: str, default: int, *, lo: int | None = None) -> int:
    try:
        value = int(os.environ.get(name) or default)
    except Exception:
        value = default
    if lo is not None:
        value = max(lo, value)
    return value


@dataclass(frozen=True)
class SendTimings:
    """Delays and bounds (seconds) used while composing and waiting for replies."""

    idle_poll_interval: float = 1.0
    idle_timeout: float = 120.0
    clear_settle: float = 0.05
    insert_settle: float = 0.1
    inter_message_delay: float = 0.3
    submit_retries: int = 10
    submit_backoff: float = 1.0
    start_timeout: float = 5.0
    start_poll_interval: float = 0.5
    reply_timeout: float = 120.0
    reply_poll_interval: float = 2.0
    debounce: float = 1.5
    post_submit_delay: float = 0.5
    # Off by default: any non-empty latest reply counts once the agent is idle.
    require_new_reply: bool = False

    @classmethod
    def from_env(cls) -> SendTimings:
        base = cls()
        return replace(
            base,
            idle_timeout=_env_float("AGENT_LINK_IDLE_TIMEOUT", base.idle_timeout, lo=1.0),
            reply_timeout=_env_float("AGENT_LINK_REPLY_TIMEOUT", base.reply_timeout, lo=1.0),
            submit_retries=_env_int("AGENT_LINK_SUBMIT_RETRIES", base.submit_retries, lo=1),
            require_new_reply=os.environ.get("AGENT_LINK_REQUIRE_NEW_REPLY", "0") == "1",
        )

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class LinkConfig:
    cdp_host: str = "127.0.0.1"
    cdp_port: int = 9000
    server_host: str = "127.0.0.1"
    server_port: int = 9999
    http_port: int = 10000
    rpc_timeout: float = 10.0
    target_filter: str = ""
    connect_retries: int = 5
    connect_backoff: float = 2.0
    timings: SendTimings = field(default_factory=SendTimings)

    @property
    def cdp_http_url(self) -> str:
        return f"http://{self.cdp_host}:{int(self.cdp_port)}"

    @classmethod
    def from_env(cls) -> LinkConfig:
        return cls(
            cdp_host=(os.environ.get("AGENT_LINK_CDP_HOST") or "127.0.0.1").strip() or "127.0.0.1",
            cdp_port=_env_int("AGENT_LINK_CDP_PORT", 9000, lo=1),
            server_host=(os.environ.get("AGENT_LINK_SERVER_HOST") or "127.0.0.1").strip() or "127.0.0.1",
            server_port=_env_int("AGENT_LINK_SERVER_PORT", 9999, lo=0),
            http_port=_env_int("AGENT_LINK_HTTP_PORT", 10000, lo=0),
            rpc_timeout=_env_float("AGENT_LINK_RPC_TIMEOUT", 10.0, lo=0.5, hi=120.0),
            target_filter=(os.environ.get("AGENT_LINK_TARGET") or "").strip(),
            connect_retries=_env_int("AGENT_LINK_CONNECT_RETRIES", 5, lo=1),
            connect_backoff=_env_float("AGENT_LINK_CONNECT_BACKOFF", 2.0, lo=0.0),
            timings=SendTimings.from_env(),
        )
