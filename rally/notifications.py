"""
Notifications - Fire-and-forget user-visible messages (toasts).

Delivery is somebody else's job. The engine only needs a sink that accepts
success/error/info messages:
- LogNotifier writes them to the log
- RecordingNotifier keeps them in memory so a request (or a test) can
  return what the user would have seen
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
import logging

logger = logging.getLogger(__name__)


class NotificationLevel(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


@dataclass(frozen=True)
class Notification:
    level: NotificationLevel
    message: str


class Notifier(ABC):
    """Sink for user-visible messages."""

    @abstractmethod
    def notify(self, level: NotificationLevel, message: str) -> None:
        pass

    def success(self, message: str) -> None:
        self.notify(NotificationLevel.SUCCESS, message)

    def error(self, message: str) -> None:
        self.notify(NotificationLevel.ERROR, message)

    def info(self, message: str) -> None:
        self.notify(NotificationLevel.INFO, message)


class LogNotifier(Notifier):
    """Writes notifications to the log."""

    def notify(self, level: NotificationLevel, message: str) -> None:
        if level is NotificationLevel.ERROR:
            logger.warning("[toast:%s] %s", level.value, message)
        else:
            logger.info("[toast:%s] %s", level.value, message)


class RecordingNotifier(Notifier):
    """Collects notifications in order."""

    def __init__(self):
        self.notifications: list[Notification] = []

    def notify(self, level: NotificationLevel, message: str) -> None:
        self.notifications.append(Notification(level=level, message=message))

    def messages(self, level: NotificationLevel | None = None) -> list[str]:
        return [
            n.message for n in self.notifications
            if level is None or n.level is level
        ]

    def drain(self) -> list[Notification]:
        """Return and forget everything recorded so far."""
        drained = self.notifications
        self.notifications = []
        return drained
