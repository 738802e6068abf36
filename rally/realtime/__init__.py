"""
Realtime Module - Coordinated change subscriptions.

The coordinator is constructed explicitly and injected into consumers;
there is no process-wide instance.
"""

from .coordinator import (
    SubscriptionCoordinator,
    SubscriptionRequest,
    ChannelGroup,
    ChannelState,
    QueueStatus,
    DEFAULT_CHANNEL_PREFIX,
)

__all__ = [
    "SubscriptionCoordinator",
    "SubscriptionRequest",
    "ChannelGroup",
    "ChannelState",
    "QueueStatus",
    "DEFAULT_CHANNEL_PREFIX",
]
