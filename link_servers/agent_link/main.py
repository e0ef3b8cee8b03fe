"""
Agent link: bridge a browser-hosted conversational agent to local clients.

Startup: connect to the agent page over the remote-debugging socket, install
the in-page capability surface, then serve the WebSocket/HTTP gateway until
SIGINT/SIGTERM.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from dataclasses import replace

from .config import LinkConfig
from .http_client import LinkError
from .link import AgentLink
from .server.gateway import GATEWAY_ACTIONS, LinkGateway
from .server.http_api import LinkHttpApi

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
)
logger = logging.getLogger("agent_link")

__all__ = ["build_config", "main", "parse_args", "run"]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="agent-link",
        description="Bridge a browser-hosted agent to local WebSocket/HTTP clients.",
        epilog="WebSocket actions: " + ", ".join(GATEWAY_ACTIONS),
    )
    parser.add_argument("--cdp-host", help="remote-debugging host (default: $AGENT_LINK_CDP_HOST or 127.0.0.1)")
    parser.add_argument("--cdp-port", type=int, help="remote-debugging port (default: $AGENT_LINK_CDP_PORT or 9000)")
    parser.add_argument("--server-host", help="gateway bind host (default: 127.0.0.1)")
    parser.add_argument("--server-port", type=int, help="gateway port (default: $AGENT_LINK_SERVER_PORT or 9999)")
    parser.add_argument("--http-port", type=int, help="HTTP API port (default: $AGENT_LINK_HTTP_PORT or 10000)")
    parser.add_argument("--target", help="pick the first page whose title or url contains this text")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> LinkConfig:
    config = LinkConfig.from_env()
    overrides = {
        "cdp_host": args.cdp_host,
        "cdp_port": args.cdp_port,
        "server_host": args.server_host,
        "server_port": args.server_port,
        "http_port": args.http_port,
        "target_filter": args.target,
    }
    return replace(config, **{k: v for k, v in overrides.items() if v is not None})


async def run(config: LinkConfig) -> int:
    link = AgentLink(config)
    logger.info("agent_link_start cdp=%s server=%s:%s", config.cdp_http_url, config.server_host, config.server_port)

    try:
        await link.connect_with_retry()
    except LinkError as exc:
        logger.error("agent_link_unavailable reason=%s", exc)
        return 1

    gateway = LinkGateway(link, host=config.server_host, port=config.server_port)
    http_api = LinkHttpApi(gateway, host=config.server_host, port=config.http_port)
    try:
        await gateway.start()
        await http_api.start()
    except OSError as exc:
        logger.error("gateway_bind_failed host=%s reason=%s", config.server_host, exc)
        await gateway.stop()
        await link.close()
        return 1

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop.set)

    logger.info("agent_link_ready")
    try:
        await stop.wait()
    finally:
        logger.info("agent_link_shutdown")
        await http_api.stop()
        await gateway.stop()
        await link.close()
    return 0


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the agent link."""
    config = build_config(parse_args(argv))
    try:
        code = asyncio.run(run(config))
    except KeyboardInterrupt:
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
