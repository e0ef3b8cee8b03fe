#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[agent-link] cdp={os.environ.get('AGENT_LINK_CDP_HOST', '127.0.0.1')}:"
    f"{os.environ.get('AGENT_LINK_CDP_PORT', '9000')} | "
    f"server_port={os.environ.get('AGENT_LINK_SERVER_PORT', '9999')} | "
    f"http_port={os.environ.get('AGENT_LINK_HTTP_PORT', '10000')} | "
    f"target={os.environ.get('AGENT_LINK_TARGET', '*')}",
    file=sys.stderr,
)

from link_servers.agent_link.main import main  # noqa: E402

if __name__ == "__main__":
    main()
