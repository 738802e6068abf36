"""
Rally - Session economy and live session engine for a tennis social platform.

Provides:
- The HP/XP session economy (cost curves, warnings, recovery advice)
- A realtime subscription coordinator that keeps channel usage bounded
- Per-tab session feeds with retrying fetches and join/leave flows
- A REST/WebSocket API over all of the above
"""

__version__ = "0.1.0"
