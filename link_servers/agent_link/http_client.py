from __future__ import annotations

import json
from typing import Any
from urllib.error import URLError
from urllib.request import Request, urlopen

from .config import LinkConfig


class LinkError(Exception):
    pass


class RpcConnectionError(LinkError, ConnectionError):
    """No active connection, or the connection closed while a call was in flight."""


class RpcTimeoutError(LinkError, TimeoutError):
    pass


class RpcCallError(LinkError):
    """The peer answered a call with an error frame."""


class CapabilityError(LinkError):
    pass


class ProtocolError(LinkError):
    pass


class HttpClientError(LinkError):
    pass


def http_get_json(url: str, timeout: float = 2.0) -> Any:
    """Fetch JSON from URL."""
    req = Request(url, headers={"User-Agent": "agent-link/1.0"})
    try:
        with urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode())
    except (TimeoutError, URLError, ValueError) as exc:
        raise HttpClientError(str(exc)) from exc


def list_targets(config: LinkConfig, timeout: float = 2.0) -> list[dict[str, Any]]:
    """Return the debuggable targets advertised by the remote peer."""
    data = http_get_json(f"{config.cdp_http_url}/json/list", timeout=timeout)
    if not isinstance(data, list):
        return []
    return [t for t in data if isinstance(t, dict)]


def select_target(targets: list[dict[str, Any]], needle: str = "") -> dict[str, Any]:
    """Pick the first page target whose title or url contains `needle` (case-insensitive)."""
    wanted = (needle or "").strip().lower()
    for target in targets:
        ttype = target.get("type")
        if ttype not in (None, "page"):
            continue
        if not isinstance(target.get("webSocketDebuggerUrl"), str):
            continue
        if wanted:
            haystack = f"{target.get('title') or ''} {target.get('url') or ''}".lower()
            if wanted not in haystack:
                continue
        return target
    if not targets:
        raise HttpClientError("No debuggable pages found")
    raise HttpClientError(f"No page matches target filter {needle!r}" if wanted else "No page target available")
