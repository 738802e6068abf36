"""
Session Status Watcher - Tells players when their sessions change state.

Listens to `sessions` updates through the coordinator, after the feeds on
the same channel have scheduled their refetch. For sessions the user
created or joined, status transitions become notices:

    waiting/open -> active      "Session started!"
    paused -> active            "Session resumed"
    * -> paused                 "Session paused"
    * -> completed              "Session completed!"
    * -> cancelled              "Session has been cancelled"
    open -> waiting             "Session is now waiting to start"

Other transitions are reported to on_status_change but produce no notice.
"""

from __future__ import annotations
from typing import Callable
import logging

from .feed import channel_prefix_for
from ..backend.base import SessionBackend, ChangeEvent, ChangeType, SESSIONS_TABLE
from ..notifications import Notifier, NotificationLevel
from ..realtime.coordinator import SubscriptionCoordinator

logger = logging.getLogger(__name__)

STATUS_WATCH_PRIORITY = 0

StatusChangeCallback = Callable[[str, str, str], None]


def status_change_notice(
    new_status: str,
    old_status: str | None,
) -> tuple[NotificationLevel, str] | None:
    """Notice for a status transition, or None when nothing should be shown."""
    if new_status == old_status:
        return None

    if new_status == "active":
        if old_status in ("waiting", "open"):
            return NotificationLevel.SUCCESS, "🎾 Session started! Get ready to play!"
        if old_status == "paused":
            return NotificationLevel.INFO, "▶️ Session resumed"
        return None
    if new_status == "paused":
        return NotificationLevel.INFO, "⏸️ Session paused"
    if new_status == "completed":
        return NotificationLevel.SUCCESS, "🏁 Session completed! Great game!"
    if new_status == "cancelled":
        return NotificationLevel.ERROR, "❌ Session has been cancelled"
    if new_status == "waiting" and old_status == "open":
        return NotificationLevel.INFO, "⏳ Session is now waiting to start"
    return None


class SessionStatusWatcher:
    """
    Watches status changes of the user's sessions.

    Usage:
        watcher = SessionStatusWatcher(backend, coordinator, notifier, "u1")
        watcher.start()
        ...
        watcher.stop()
    """

    def __init__(
        self,
        backend: SessionBackend,
        coordinator: SubscriptionCoordinator,
        notifier: Notifier,
        user_id: str | None,
        on_status_change: StatusChangeCallback | None = None,
    ):
        self.backend = backend
        self.coordinator = coordinator
        self.notifier = notifier
        self.user_id = user_id
        self.on_status_change = on_status_change
        self._subscription_id: str | None = None

    @property
    def watching(self) -> bool:
        return self._subscription_id is not None

    def start(self):
        if not self.user_id or self.watching:
            return
        self._subscription_id = self.coordinator.add_subscription_request(
            SESSIONS_TABLE,
            self.handle_change,
            STATUS_WATCH_PRIORITY,
            channel_prefix_for(self.user_id),
        )

    def stop(self):
        if self._subscription_id is None:
            return
        self.coordinator.remove_subscription_request(self._subscription_id)
        self._subscription_id = None

    async def handle_change(self, event: ChangeEvent):
        if event.change_type is not ChangeType.UPDATE:
            return

        session = event.new
        new_status = session.get("status")
        old_status = event.old.get("status")
        if not new_status or new_status == old_status:
            return
        if not await self.is_user_in_session(session):
            return

        session_id = session.get("id", "")
        logger.info("Session %s status %s -> %s", session_id, old_status, new_status)

        notice = status_change_notice(new_status, old_status)
        if notice is not None:
            level, message = notice
            self.notifier.notify(level, message)

        if self.on_status_change is not None:
            self.on_status_change(session_id, old_status, new_status)

    async def is_user_in_session(self, session: dict) -> bool:
        """Creator, or holder of a joined participant row."""
        if not self.user_id:
            return False
        if session.get("creator_id") == self.user_id:
            return True
        try:
            participant = await self.backend.find_participant(session["id"], self.user_id)
        except Exception:
            logger.warning(
                "Could not check participation in session %s", session.get("id"),
                exc_info=True,
            )
            return False
        return participant is not None
