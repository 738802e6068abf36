"""
Errors - Exception types and machine-readable error codes.

Most failures are reported as state (a feed's `error`, a result object's
`success=False`). Exceptions are reserved for:
- Backend transport failures (BackendError)
- Realtime channels that fail to open (SubscriptionError)
- Join flows the caller must react to (SessionActionError)
- Retry loops that ran out of attempts (RetryExhausted)
"""

from __future__ import annotations
from enum import Enum


class ErrorCode(str, Enum):
    """Structured error codes."""
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    INSUFFICIENT_TOKENS = "INSUFFICIENT_TOKENS"
    JOIN_FAILED = "JOIN_FAILED"
    LEAVE_FAILED = "LEAVE_FAILED"
    NOT_A_PARTICIPANT = "NOT_A_PARTICIPANT"
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class RallyError(Exception):
    """Base class for all engine errors."""


class BackendError(RallyError):
    """A call to the managed backend failed."""


class SubscriptionError(RallyError):
    """A realtime channel could not be opened."""


class RetryExhausted(RallyError):
    """An operation kept failing after every allowed retry."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class SessionActionError(RallyError):
    """
    A join/leave flow failed.

    `user_message` is what the player was shown; `server_error` is the raw
    reason reported by the backend, if any.
    """

    def __init__(
        self,
        user_message: str,
        error_code: ErrorCode = ErrorCode.JOIN_FAILED,
        server_error: str | None = None,
    ):
        super().__init__(user_message)
        self.user_message = user_message
        self.error_code = error_code
        self.server_error = server_error
