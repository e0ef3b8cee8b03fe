"""Local front-ends for the agent link.

Keep this package import light: `gateway` pulls `websockets` lazily at start().
"""

from __future__ import annotations

__all__ = ["gateway"]
