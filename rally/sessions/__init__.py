"""
Sessions Module - Live session lists, join/leave flows and status notices.

Components:
- SessionFeed: per-tab session list kept fresh by realtime changes
- SessionStatusWatcher: notices when the user's sessions change status
- retry_with_backoff: exponential backoff used by feeds
- Session / Participant: sessions as the engine sees them
"""

from .models import (
    Session,
    Participant,
    SessionTab,
    SessionStatus,
    ParticipantStatus,
    UNKNOWN_CREATOR,
)
from .retry import RetryPolicy, retry_with_backoff
from .feed import SessionFeed, FeedOptions, FetchState, channel_prefix_for
from .status import SessionStatusWatcher, status_change_notice

__all__ = [
    "Session",
    "Participant",
    "SessionTab",
    "SessionStatus",
    "ParticipantStatus",
    "UNKNOWN_CREATOR",
    "RetryPolicy",
    "retry_with_backoff",
    "SessionFeed",
    "FeedOptions",
    "FetchState",
    "channel_prefix_for",
    "SessionStatusWatcher",
    "status_change_notice",
]
