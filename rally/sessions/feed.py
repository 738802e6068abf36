"""
Session Feed - A live, per-tab list of sessions for one user.

LIFECYCLE:
1. start(): register change interests with the coordinator, fetch once
2. Every sessions / session_participants change schedules a new fetch
3. join_session / leave_session call atomic backend procedures, then refetch
   (skipped when FeedOptions.refresh_after_action is off)
4. close(): cancel pending fetches and retries, drop subscriptions

FETCH STATES:
    idle -> loading -> success | error -> (retry) loading -> ...

Retries are silent. Only when every retry has failed does the user get
one error notification; the feed then stays in the error state until the
next successful fetch.

Fetches triggered by changes are not coalesced. They are idempotent reads
and the last one to finish wins.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Union
import asyncio
import inspect
import logging

from .models import Session, SessionTab, SessionStatus, ParticipantStatus
from .retry import RetryPolicy, retry_with_backoff
from ..backend.base import (
    SessionBackend,
    SessionQuery,
    JoinResult,
    LeaveResult,
    ChangeEvent,
    SESSIONS_TABLE,
    PARTICIPANTS_TABLE,
)
from ..errors import ErrorCode, RetryExhausted, SessionActionError
from ..notifications import Notifier
from ..realtime.coordinator import SubscriptionCoordinator

logger = logging.getLogger(__name__)

INSUFFICIENT_TOKENS = "Insufficient tokens"

MSG_NOT_AUTHENTICATED = "User not authenticated"
MSG_LOAD_FAILED = "Failed to load sessions after multiple attempts"
MSG_JOINED = "Successfully joined session!"
MSG_SESSION_READY = "Session is ready to start!"
MSG_JOIN_FAILED = "Failed to join session"
MSG_NOT_ENOUGH_TOKENS = "Not enough tokens! You need more tokens to join this session."
MSG_NOT_ENOUGH_TOKENS_STORE = "Not enough tokens! Please visit the store to purchase more tokens."
MSG_NOT_PARTICIPANT = "Could not find your participation in this session"
MSG_LEFT = "Successfully left session"
MSG_LEAVE_FAILED = "Failed to leave session"

SESSIONS_PRIORITY = 2
PARTICIPANTS_PRIORITY = 1

UpdateCallback = Callable[[list[Session]], Union[None, Awaitable[None]]]


class FetchState(Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class FeedOptions:
    enabled: bool = True
    retry_attempts: int = 3
    retry_delay: float = 1.0  # seconds
    on_error: Callable[[Exception], None] | None = None
    # Refetch the list after a successful join / leave
    refresh_after_action: bool = True


def channel_prefix_for(user_id: str) -> str:
    return f"coordinated-{user_id}"


class SessionFeed:
    """
    Sessions for one (user, tab), kept fresh through the coordinator.

    Usage:
        feed = SessionFeed(backend, coordinator, notifier, "available", user_id)
        await feed.start()
        feed.sessions       # current list
        await feed.join_session(session_id)
        await feed.close()
    """

    def __init__(
        self,
        backend: SessionBackend,
        coordinator: SubscriptionCoordinator,
        notifier: Notifier,
        tab: SessionTab | str,
        user_id: str | None = None,
        options: FeedOptions | None = None,
        on_update: UpdateCallback | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.backend = backend
        self.coordinator = coordinator
        self.notifier = notifier
        self.tab = SessionTab(tab)
        self.user_id = user_id
        self.options = options or FeedOptions()
        self.on_update = on_update
        self._sleep = sleep

        self.sessions: list[Session] = []
        self.state = FetchState.IDLE
        self.error: str | None = None
        self.retry_count = 0

        self._tasks: set[asyncio.Task] = set()
        self._subscription_ids: list[str] = []
        self._closed = False

    @property
    def loading(self) -> bool:
        return self.state is FetchState.LOADING

    @property
    def active(self) -> bool:
        return self.options.enabled and bool(self.user_id) and not self._closed

    @property
    def subscription_ids(self) -> list[str]:
        return list(self._subscription_ids)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> list[Session]:
        """Subscribe to changes and run the initial fetch."""
        self.subscribe()
        return await self.fetch_sessions()

    def subscribe(self):
        """Register sessions and participants interests with the coordinator."""
        if not self.active:
            return

        self._clear_subscriptions()
        prefix = channel_prefix_for(self.user_id)
        self._subscription_ids = [
            self.coordinator.add_subscription_request(
                SESSIONS_TABLE, self._on_change, SESSIONS_PRIORITY, prefix,
            ),
            self.coordinator.add_subscription_request(
                PARTICIPANTS_TABLE, self._on_change, PARTICIPANTS_PRIORITY, prefix,
            ),
        ]
        logger.debug(
            "Feed %s/%s subscribed: %s",
            self.user_id, self.tab.value, self._subscription_ids,
        )

    async def close(self):
        """Cancel pending work and release subscriptions."""
        self._closed = True
        self._clear_subscriptions()

        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def refresh(self) -> asyncio.Task | None:
        """Schedule a fetch in the background."""
        if self._closed:
            return None
        task = asyncio.get_running_loop().create_task(self.fetch_sessions())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_pending(self):
        """Wait for background fetches (and their retries) to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # =========================================================================
    # Fetching
    # =========================================================================

    async def fetch_sessions(self) -> list[Session]:
        """
        Fetch sessions for the tab, retrying with exponential backoff.

        Never raises for backend failures; they end up in `error`.
        """
        if not self.active:
            self.state = FetchState.IDLE
            return self.sessions

        policy = RetryPolicy(
            attempts=self.options.retry_attempts,
            base_delay=self.options.retry_delay,
        )
        try:
            sessions = await retry_with_backoff(
                self._fetch_once,
                policy,
                on_failure=self._record_failure,
                sleep=self._sleep,
            )
        except RetryExhausted as e:
            logger.error(
                "Giving up on sessions for %s/%s: %s",
                self.user_id, self.tab.value, e.last_error,
            )
            self.notifier.error(MSG_LOAD_FAILED)
            return self.sessions

        self.sessions = sessions
        self.state = FetchState.SUCCESS
        self.error = None
        self.retry_count = 0

        if self.on_update is not None:
            try:
                result = self.on_update(sessions)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("on_update callback for %s/%s raised", self.user_id, self.tab.value)
        return sessions

    async def _fetch_once(self) -> list[Session]:
        self.state = FetchState.LOADING
        self.error = None

        query = await self._build_query()
        rows = await self.backend.fetch_sessions(query)
        return [Session.from_row(row, self.user_id) for row in rows]

    async def _build_query(self) -> SessionQuery:
        if self.tab is SessionTab.AVAILABLE:
            return SessionQuery(status=SessionStatus.WAITING.value, is_private=False)

        session_ids = await self._joined_session_ids()
        if self.tab is SessionTab.COMPLETED:
            return SessionQuery(
                status=SessionStatus.COMPLETED.value,
                member_id=self.user_id,
                member_session_ids=session_ids,
            )
        return SessionQuery(member_id=self.user_id, member_session_ids=session_ids)

    async def _joined_session_ids(self) -> tuple[str, ...]:
        try:
            ids = await self.backend.fetch_participant_session_ids(
                self.user_id, ParticipantStatus.JOINED.value,
            )
        except Exception as e:
            # Fall back to sessions the user created
            logger.warning("Error fetching participant sessions for %s: %s", self.user_id, e)
            return ()
        return tuple(ids)

    def _record_failure(self, error: Exception, failure_number: int):
        self.state = FetchState.ERROR
        self.error = str(error) or type(error).__name__
        self.retry_count = min(failure_number, self.options.retry_attempts)
        logger.warning(
            "Error fetching sessions for %s/%s (failure %d): %s",
            self.user_id, self.tab.value, failure_number, self.error,
        )
        if self.options.on_error is not None:
            try:
                self.options.on_error(error)
            except Exception:
                logger.exception("on_error callback for %s/%s raised", self.user_id, self.tab.value)

    def _on_change(self, event: ChangeEvent):
        logger.debug("Feed %s/%s saw %s change", self.user_id, self.tab.value, event.table)
        self.refresh()

    def _clear_subscriptions(self):
        for subscription_id in self._subscription_ids:
            self.coordinator.remove_subscription_request(subscription_id)
        self._subscription_ids = []

    # =========================================================================
    # Join / Leave
    # =========================================================================

    async def join_session(self, session_id: str) -> JoinResult | None:
        """
        Join a session through the atomic join_session procedure.

        Returns None (after notifying) when no user is signed in.

        Raises:
            SessionActionError: the join was rejected or the call failed
        """
        if not self.user_id:
            self.notifier.error(MSG_NOT_AUTHENTICATED)
            return None

        logger.info("User %s joining session %s", self.user_id, session_id)
        try:
            result = await self.backend.join_session(session_id, self.user_id)
        except Exception as e:
            logger.exception("Error joining session %s", session_id)
            if INSUFFICIENT_TOKENS in str(e):
                message, code = MSG_NOT_ENOUGH_TOKENS_STORE, ErrorCode.INSUFFICIENT_TOKENS
            else:
                message, code = MSG_JOIN_FAILED, ErrorCode.JOIN_FAILED
            self.notifier.error(message)
            raise SessionActionError(message, code, server_error=str(e)) from e

        if not result.success:
            logger.warning("Join of session %s rejected: %s", session_id, result.error)
            if result.error and INSUFFICIENT_TOKENS in result.error:
                message, code = MSG_NOT_ENOUGH_TOKENS, ErrorCode.INSUFFICIENT_TOKENS
            else:
                message, code = result.error or MSG_JOIN_FAILED, ErrorCode.JOIN_FAILED
            self.notifier.error(message)
            raise SessionActionError(message, code, server_error=result.error)

        self.notifier.success(MSG_JOINED)
        if result.session_ready:
            self.notifier.success(MSG_SESSION_READY)

        if self.options.refresh_after_action:
            await self.fetch_sessions()
        return result

    async def leave_session(self, session_id: str) -> LeaveResult:
        """
        Leave a session through the atomic leave_session procedure.

        The participant row update and the stakes refund happen in the same
        backend transaction.
        """
        if not self.user_id:
            self.notifier.error(MSG_NOT_AUTHENTICATED)
            return LeaveResult(
                success=False,
                error=MSG_NOT_AUTHENTICATED,
                error_code=ErrorCode.NOT_AUTHENTICATED.value,
            )

        try:
            result = await self.backend.leave_session(session_id, self.user_id)
        except Exception as e:
            logger.exception("Error leaving session %s", session_id)
            self.notifier.error(MSG_LEAVE_FAILED)
            return LeaveResult(
                success=False,
                error=str(e),
                error_code=ErrorCode.LEAVE_FAILED.value,
            )

        if not result.success:
            logger.warning("Leave of session %s rejected: %s", session_id, result.error)
            if result.error_code == ErrorCode.NOT_A_PARTICIPANT.value:
                self.notifier.error(MSG_NOT_PARTICIPANT)
            else:
                self.notifier.error(MSG_LEAVE_FAILED)
            return result

        if result.refunded_amount > 0:
            self.notifier.success(
                f"Left session and received {result.refunded_amount} tokens refund"
            )
        else:
            self.notifier.success(MSG_LEFT)

        if self.options.refresh_after_action:
            await self.fetch_sessions()
        return result

    def snapshot(self) -> dict[str, Any]:
        """Plain view of the feed state (for diagnostics)."""
        return {
            "tab": self.tab.value,
            "user_id": self.user_id,
            "state": self.state.value,
            "error": self.error,
            "retry_count": self.retry_count,
            "session_count": len(self.sessions),
        }
