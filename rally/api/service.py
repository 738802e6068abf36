"""
API Service - Business logic layer between the API and the engine.

The service:
1. Owns the backend, the realtime client and the one coordinator
2. Runs calculator queries
3. Runs session listings and join/leave flows through Session Feeds
4. Opens live feeds for WebSocket clients

Request-scoped flows use a RecordingNotifier so the notifications a user
would have seen can be returned with the response.

This layer is framework-agnostic (can be used with FastAPI, Flask, etc.)
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional
import asyncio
import logging

from ..backend import SessionBackend, RealtimeClient, MemoryBackend, MemoryRealtime
from ..economy import (
    SessionCostCalculation,
    SessionPreview,
    calculate_session_costs,
    format_session_preview,
    is_session_too_risky,
    suggest_alternative_durations,
)
from ..errors import ErrorCode, SessionActionError
from ..notifications import Notification, RecordingNotifier
from ..realtime import SubscriptionCoordinator, QueueStatus
from ..sessions import (
    Session,
    SessionTab,
    SessionFeed,
    FeedOptions,
    SessionStatusWatcher,
)

logger = logging.getLogger(__name__)

SESSION_NOT_FOUND = "Session not found"


@dataclass
class PreviewResult:
    """A preview plus risk assessment."""
    preview: SessionPreview
    too_risky: bool
    alternative_durations: list[int]


@dataclass
class SessionListResult:
    """Outcome of a one-off session listing."""
    user_id: str
    tab: SessionTab
    sessions: list[Session]
    error: Optional[str] = None
    notifications: list[Notification] = field(default_factory=list)


@dataclass
class ActionResult:
    """Outcome of a join or leave flow."""
    session_id: str
    success: bool
    participant_count: Optional[int] = None
    session_ready: bool = False
    refunded_amount: int = 0
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    notifications: list[Notification] = field(default_factory=list)


@dataclass
class LiveFeed:
    """A subscribed feed and status watcher serving one client."""
    feed: SessionFeed
    watcher: SessionStatusWatcher
    notifier: RecordingNotifier

    async def close(self):
        self.watcher.stop()
        await self.feed.close()


@dataclass
class APIService:
    """
    Main API service.

    Usage:
        service = APIService()

        # Calculator
        calculation = service.calculate_costs("match", 90)

        # Sessions
        result = await service.list_sessions("u1", SessionTab.AVAILABLE)
        action = await service.join_session(session_id, "u1")
    """
    realtime: RealtimeClient = field(default_factory=MemoryRealtime)
    backend: Optional[SessionBackend] = None
    coordinator: Optional[SubscriptionCoordinator] = None

    retry_attempts: int = 3
    retry_delay: float = 1.0  # seconds
    subscribe_timeout: float = 30.0  # seconds
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    def __post_init__(self):
        if self.backend is None:
            realtime = self.realtime if isinstance(self.realtime, MemoryRealtime) else None
            self.backend = MemoryBackend(realtime=realtime)
        if self.coordinator is None:
            self.coordinator = SubscriptionCoordinator(
                self.realtime, subscribe_timeout=self.subscribe_timeout,
            )

    # =========================================================================
    # Economy
    # =========================================================================

    def calculate_costs(self, session_type: str, duration_minutes: float) -> SessionCostCalculation:
        return calculate_session_costs(session_type, duration_minutes)

    def preview_session(
        self,
        session_type: str,
        duration_minutes: float,
        current_hp: float,
    ) -> PreviewResult:
        """Preview plus a risk check and shorter alternatives when risky."""
        preview = format_session_preview(session_type, duration_minutes, current_hp)
        too_risky = is_session_too_risky(current_hp, session_type, duration_minutes)
        alternatives = (
            suggest_alternative_durations(current_hp, session_type, duration_minutes)
            if too_risky else []
        )
        return PreviewResult(
            preview=preview,
            too_risky=too_risky,
            alternative_durations=alternatives,
        )

    # =========================================================================
    # Sessions
    # =========================================================================

    def make_feed(
        self,
        user_id: str,
        tab: SessionTab | str,
        notifier: RecordingNotifier,
        on_update=None,
        refresh_after_action: bool = True,
    ) -> SessionFeed:
        return SessionFeed(
            self.backend,
            self.coordinator,
            notifier,
            tab,
            user_id=user_id,
            options=FeedOptions(
                retry_attempts=self.retry_attempts,
                retry_delay=self.retry_delay,
                refresh_after_action=refresh_after_action,
            ),
            on_update=on_update,
            sleep=self.sleep,
        )

    def action_feed(self, user_id: str, notifier: RecordingNotifier) -> SessionFeed:
        """One-off feed for a single join / leave; its list is never read."""
        return self.make_feed(
            user_id, SessionTab.MY_SESSIONS, notifier, refresh_after_action=False,
        )

    async def list_sessions(self, user_id: str, tab: SessionTab | str) -> SessionListResult:
        """One fetch (with retries) without subscribing to changes."""
        notifier = RecordingNotifier()
        feed = self.make_feed(user_id, tab, notifier)
        try:
            sessions = await feed.fetch_sessions()
        finally:
            await feed.close()

        return SessionListResult(
            user_id=user_id,
            tab=feed.tab,
            sessions=sessions,
            error=feed.error,
            notifications=notifier.drain(),
        )

    async def join_session(self, session_id: str, user_id: str) -> ActionResult:
        notifier = RecordingNotifier()
        feed = self.action_feed(user_id, notifier)
        try:
            result = await feed.join_session(session_id)
        except SessionActionError as e:
            code = e.error_code
            if e.server_error == SESSION_NOT_FOUND:
                code = ErrorCode.SESSION_NOT_FOUND
            return ActionResult(
                session_id=session_id,
                success=False,
                error=e.user_message,
                error_code=code,
                notifications=notifier.drain(),
            )
        finally:
            await feed.close()

        if result is None:
            return ActionResult(
                session_id=session_id,
                success=False,
                error="User not authenticated",
                error_code=ErrorCode.NOT_AUTHENTICATED,
                notifications=notifier.drain(),
            )

        return ActionResult(
            session_id=session_id,
            success=True,
            participant_count=result.participant_count,
            session_ready=result.session_ready,
            notifications=notifier.drain(),
        )

    async def leave_session(self, session_id: str, user_id: str) -> ActionResult:
        notifier = RecordingNotifier()
        feed = self.action_feed(user_id, notifier)
        try:
            result = await feed.leave_session(session_id)
        finally:
            await feed.close()

        return ActionResult(
            session_id=session_id,
            success=result.success,
            refunded_amount=result.refunded_amount,
            error=result.error,
            error_code=ErrorCode(result.error_code) if result.error_code else None,
            notifications=notifier.drain(),
        )

    # =========================================================================
    # Live feeds
    # =========================================================================

    async def open_feed(
        self,
        user_id: str,
        tab: SessionTab | str,
        on_update: Callable[[list[Session], list[Notification]], Awaitable[None]],
    ) -> LiveFeed:
        """
        Subscribe a feed and a status watcher for one client.

        on_update(sessions, notifications) is awaited after every successful
        fetch, starting with the initial one.
        """
        notifier = RecordingNotifier()

        async def forward(sessions: list[Session]):
            await on_update(sessions, notifier.drain())

        feed = self.make_feed(user_id, tab, notifier, on_update=forward)
        watcher = SessionStatusWatcher(self.backend, self.coordinator, notifier, user_id)
        watcher.start()
        await feed.start()

        logger.info("Opened live feed for %s (%s)", user_id, feed.tab.value)
        return LiveFeed(feed=feed, watcher=watcher, notifier=notifier)

    async def close_feed(self, live: LiveFeed):
        await live.close()
        logger.info("Closed live feed for %s (%s)", live.feed.user_id, live.feed.tab.value)

    def queue_status(self) -> tuple[QueueStatus, list[str]]:
        return (
            self.coordinator.get_queue_status(),
            self.coordinator.get_active_subscriptions(),
        )

    def shutdown(self):
        self.coordinator.clear_all()
