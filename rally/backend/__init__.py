"""
Backend Module - Interfaces to the managed backend.

The engine is a pure consumer of:
- Session/participant queries
- Atomic join/leave/token procedures
- Realtime change channels

MemoryBackend and MemoryRealtime implement the interfaces in-process.
"""

from .base import (
    SessionBackend,
    RealtimeClient,
    RealtimeChannel,
    SessionQuery,
    JoinResult,
    LeaveResult,
    ChangeEvent,
    ChangeType,
    ChannelStatus,
    SESSIONS_TABLE,
    PARTICIPANTS_TABLE,
)
from .memory import MemoryBackend, MemoryRealtime, MemoryChannel

__all__ = [
    "SessionBackend",
    "RealtimeClient",
    "RealtimeChannel",
    "SessionQuery",
    "JoinResult",
    "LeaveResult",
    "ChangeEvent",
    "ChangeType",
    "ChannelStatus",
    "SESSIONS_TABLE",
    "PARTICIPANTS_TABLE",
    "MemoryBackend",
    "MemoryRealtime",
    "MemoryChannel",
]
