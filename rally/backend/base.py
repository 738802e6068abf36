"""
Backend Interfaces - What the engine needs from the managed backend.

The engine never owns storage. It consumes:
- A queryable sessions collection (with participants and profile names)
- Two atomic server-side procedures: join_session and leave_session
- A token credit procedure (add_tokens)
- A realtime change feed: named channels bound to table changes

Implementations must make join_session and leave_session all-or-nothing:
tokens and participant rows change together or not at all.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Union


SESSIONS_TABLE = "sessions"
PARTICIPANTS_TABLE = "session_participants"


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChannelStatus(str, Enum):
    """Outcome of a channel subscribe handshake."""
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


@dataclass(frozen=True)
class ChangeEvent:
    """A row change pushed by the realtime feed."""
    table: str
    change_type: ChangeType
    new: dict[str, Any] = field(default_factory=dict)
    old: dict[str, Any] = field(default_factory=dict)

    @property
    def record(self) -> dict[str, Any]:
        """The row as it is now (or was, for deletes)."""
        return self.new or self.old


ChangeHandler = Callable[[ChangeEvent], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class SessionQuery:
    """
    Filter for the sessions collection.

    member_id selects sessions the user created OR whose id is in
    member_session_ids. None fields do not filter.
    """
    status: str | None = None
    is_private: bool | None = None
    member_id: str | None = None
    member_session_ids: tuple[str, ...] = ()
    order_by: str = "created_at"
    descending: bool = True


@dataclass
class JoinResult:
    """Response of the join_session procedure."""
    success: bool
    error: str | None = None
    participant_count: int | None = None
    session_ready: bool = False


@dataclass
class LeaveResult:
    """Response of the leave_session procedure."""
    success: bool
    error: str | None = None
    error_code: str | None = None
    refunded_amount: int = 0


class SessionBackend(ABC):
    """Data access and server-side procedures for sessions."""

    @abstractmethod
    async def fetch_sessions(self, query: SessionQuery) -> list[dict[str, Any]]:
        """
        Fetch session rows matching a query.

        Each row carries eager-loaded relations:
            participants: [{id, user_id, status, joined_at, user: {full_name}}]
            creator: {full_name} | None
        """

    @abstractmethod
    async def fetch_participant_session_ids(self, user_id: str, status: str = "joined") -> list[str]:
        """Ids of sessions where the user has a participant row in `status`."""

    @abstractmethod
    async def get_session(self, session_id: str) -> dict[str, Any] | None:
        pass

    @abstractmethod
    async def find_participant(
        self,
        session_id: str,
        user_id: str,
        status: str = "joined",
    ) -> dict[str, Any] | None:
        pass

    @abstractmethod
    async def join_session(self, session_id: str, user_id: str) -> JoinResult:
        """Atomically debit stakes and create the participant row."""

    @abstractmethod
    async def leave_session(self, session_id: str, user_id: str) -> LeaveResult:
        """Atomically mark the participant row left and refund stakes."""

    @abstractmethod
    async def add_tokens(
        self,
        user_id: str,
        amount: int,
        token_type: str,
        source: str,
        description: str,
    ) -> None:
        pass


class RealtimeChannel(ABC):
    """A named realtime channel bound to one or more table feeds."""

    name: str

    @abstractmethod
    def on_change(self, table: str, handler: ChangeHandler) -> RealtimeChannel:
        """Bind a handler to every change on `table`. Returns self for chaining."""

    @abstractmethod
    async def subscribe(self) -> ChannelStatus:
        """Perform the subscribe handshake."""


class RealtimeClient(ABC):
    """Factory and owner of realtime channels."""

    @abstractmethod
    def channel(self, name: str) -> RealtimeChannel:
        pass

    @abstractmethod
    def remove_channel(self, channel: RealtimeChannel) -> None:
        pass
