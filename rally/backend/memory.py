"""
In-Memory Backend - A self-contained backend for development and tests.

MemoryBackend keeps sessions, participants, profiles and token balances in
dicts and publishes every mutation to a MemoryRealtime hub, so the
realtime path can be exercised end to end without a network.

Procedures are atomic because nothing awaits between their checks and
their writes.

Fault injection:
    backend.fail_next("fetch_sessions", times=3)
    realtime.fail_next_subscribe(times=1)
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
import asyncio
import inspect
import logging
import uuid

from .base import (
    SessionBackend,
    RealtimeClient,
    RealtimeChannel,
    SessionQuery,
    JoinResult,
    LeaveResult,
    ChangeEvent,
    ChangeType,
    ChangeHandler,
    ChannelStatus,
    SESSIONS_TABLE,
    PARTICIPANTS_TABLE,
)
from ..errors import BackendError, ErrorCode

logger = logging.getLogger(__name__)

INSUFFICIENT_TOKENS = "Insufficient tokens"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Realtime
# =============================================================================

class MemoryChannel(RealtimeChannel):
    """A channel living inside a MemoryRealtime hub."""

    def __init__(self, hub: MemoryRealtime, name: str):
        self.hub = hub
        self.name = name
        self.status: ChannelStatus | None = None
        self.bindings: list[tuple[str, ChangeHandler]] = []

    def on_change(self, table: str, handler: ChangeHandler) -> MemoryChannel:
        self.bindings.append((table, handler))
        return self

    async def subscribe(self) -> ChannelStatus:
        self.status = await self.hub._handshake(self)
        return self.status

    @property
    def tables(self) -> list[str]:
        return [table for table, _ in self.bindings]


class MemoryRealtime(RealtimeClient):
    """
    Realtime hub that delivers published changes to subscribed channels.

    Tracks every channel it ever opened so tests can count them.
    """

    def __init__(self, handshake_delay: float = 0.0):
        self.handshake_delay = handshake_delay
        self.channels: list[MemoryChannel] = []
        self.removed: list[MemoryChannel] = []
        self._failures_pending = 0
        self._hang_pending = 0

    def channel(self, name: str) -> MemoryChannel:
        channel = MemoryChannel(self, name)
        self.channels.append(channel)
        return channel

    def remove_channel(self, channel: RealtimeChannel) -> None:
        if channel in self.removed:
            return
        channel.status = ChannelStatus.CLOSED
        self.removed.append(channel)

    def fail_next_subscribe(self, times: int = 1):
        """Make the next `times` handshakes report CHANNEL_ERROR."""
        self._failures_pending += times

    def hang_next_subscribe(self, times: int = 1):
        """Make the next `times` handshakes never complete."""
        self._hang_pending += times

    @property
    def open_channels(self) -> list[MemoryChannel]:
        return [
            c for c in self.channels
            if c.status is ChannelStatus.SUBSCRIBED and c not in self.removed
        ]

    async def publish(self, event: ChangeEvent):
        """Deliver a change to every open channel bound to its table."""
        for channel in list(self.open_channels):
            for table, handler in list(channel.bindings):
                if table != event.table:
                    continue
                result = handler(event)
                if inspect.isawaitable(result):
                    await result

    async def _handshake(self, channel: MemoryChannel) -> ChannelStatus:
        if self._hang_pending:
            self._hang_pending -= 1
            await asyncio.Event().wait()
        if self.handshake_delay:
            await asyncio.sleep(self.handshake_delay)
        if self._failures_pending:
            self._failures_pending -= 1
            return ChannelStatus.CHANNEL_ERROR
        if channel in self.removed:
            return ChannelStatus.CLOSED
        return ChannelStatus.SUBSCRIBED


# =============================================================================
# Data
# =============================================================================

@dataclass
class TokenLedgerEntry:
    user_id: str
    amount: int
    token_type: str
    source: str
    description: str
    created_at: str = field(default_factory=_now)


class MemoryBackend(SessionBackend):
    """
    Dict-backed implementation of SessionBackend.

    Usage:
        realtime = MemoryRealtime()
        backend = MemoryBackend(realtime=realtime)
        backend.add_profile("u1", "Alex", tokens=50)
        session = backend.create_session(creator_id="u1", stakes_amount=10)
    """

    def __init__(self, realtime: MemoryRealtime | None = None):
        self.realtime = realtime
        self.sessions: dict[str, dict[str, Any]] = {}
        self.participants: dict[str, dict[str, Any]] = {}
        self.profiles: dict[str, dict[str, Any]] = {}
        self.token_balances: dict[str, int] = {}
        self.token_ledger: list[TokenLedgerEntry] = []
        self.calls: list[str] = []
        self._failures: dict[str, list[Exception]] = {}

    # -------------------------------------------------------------------------
    # Seeding
    # -------------------------------------------------------------------------

    def add_profile(self, user_id: str, full_name: str, tokens: int = 0) -> dict[str, Any]:
        profile = {"id": user_id, "full_name": full_name}
        self.profiles[user_id] = profile
        self.token_balances[user_id] = tokens
        return profile

    def create_session(
        self,
        creator_id: str,
        session_type: str = "match",
        status: str = "waiting",
        max_players: int = 2,
        stakes_amount: int = 0,
        is_private: bool = False,
        created_at: str | None = None,
        **extra: Any,
    ) -> dict[str, Any]:
        """Insert a session row (no realtime event)."""
        created = created_at or _now()
        row = {
            "id": extra.pop("id", None) or str(uuid.uuid4()),
            "creator_id": creator_id,
            "session_type": session_type,
            "format": extra.pop("format", None),
            "max_players": max_players,
            "stakes_amount": stakes_amount,
            "location": extra.pop("location", None),
            "notes": extra.pop("notes", None),
            "status": status,
            "is_private": is_private,
            "invitation_code": extra.pop("invitation_code", None),
            "created_at": created,
            "updated_at": created,
        }
        row.update(extra)
        self.sessions[row["id"]] = row
        return row

    def add_participant(
        self,
        session_id: str,
        user_id: str,
        status: str = "joined",
    ) -> dict[str, Any]:
        """Insert a participant row (no token movement, no realtime event)."""
        row = {
            "id": str(uuid.uuid4()),
            "session_id": session_id,
            "user_id": user_id,
            "status": status,
            "joined_at": _now(),
            "left_at": None,
        }
        self.participants[row["id"]] = row
        return row

    def fail_next(self, operation: str, times: int = 1, error: Exception | None = None):
        """Make the next `times` calls to `operation` raise."""
        queue = self._failures.setdefault(operation, [])
        for _ in range(times):
            queue.append(error or BackendError(f"{operation} failed"))

    # -------------------------------------------------------------------------
    # Mutations published to realtime
    # -------------------------------------------------------------------------

    async def update_session(self, session_id: str, **changes: Any) -> dict[str, Any]:
        self._check_failure("update_session")
        row = self.sessions.get(session_id)
        if row is None:
            raise BackendError(f"Session {session_id} not found")
        old = dict(row)
        row.update(changes)
        row["updated_at"] = _now()
        await self._publish(SESSIONS_TABLE, ChangeType.UPDATE, new=dict(row), old=old)
        return row

    # -------------------------------------------------------------------------
    # SessionBackend
    # -------------------------------------------------------------------------

    async def fetch_sessions(self, query: SessionQuery) -> list[dict[str, Any]]:
        self._check_failure("fetch_sessions")
        rows = [
            self._with_relations(row)
            for row in self.sessions.values()
            if self._matches(row, query)
        ]
        rows.sort(key=lambda r: r.get(query.order_by) or "", reverse=query.descending)
        return rows

    async def fetch_participant_session_ids(self, user_id: str, status: str = "joined") -> list[str]:
        self._check_failure("fetch_participant_session_ids")
        return [
            p["session_id"] for p in self.participants.values()
            if p["user_id"] == user_id and p["status"] == status
        ]

    async def get_session(self, session_id: str) -> dict[str, Any] | None:
        self._check_failure("get_session")
        row = self.sessions.get(session_id)
        return dict(row) if row else None

    async def find_participant(
        self,
        session_id: str,
        user_id: str,
        status: str = "joined",
    ) -> dict[str, Any] | None:
        self._check_failure("find_participant")
        for row in self.participants.values():
            if (
                row["session_id"] == session_id
                and row["user_id"] == user_id
                and row["status"] == status
            ):
                return dict(row)
        return None

    async def join_session(self, session_id: str, user_id: str) -> JoinResult:
        self._check_failure("join_session")

        session = self.sessions.get(session_id)
        if session is None:
            return JoinResult(success=False, error="Session not found")
        if session["status"] != "waiting":
            return JoinResult(success=False, error="Session is not open for joining")
        if self._joined_row(session_id, user_id):
            return JoinResult(success=False, error="Already joined this session")

        joined = self._joined_count(session_id)
        if joined >= session["max_players"]:
            return JoinResult(success=False, error="Session is full")

        stakes = session.get("stakes_amount") or 0
        balance = self.token_balances.get(user_id, 0)
        if stakes > balance:
            return JoinResult(
                success=False,
                error=f"{INSUFFICIENT_TOKENS}: need {stakes}, have {balance}",
            )

        # Debit and insert together
        if stakes:
            self.token_balances[user_id] = balance - stakes
            self.token_ledger.append(TokenLedgerEntry(
                user_id=user_id,
                amount=-stakes,
                token_type="regular",
                source="session_join_stakes",
                description="Stakes for joining session",
            ))
        participant = self.add_participant(session_id, user_id)
        count = joined + 1

        await self._publish(PARTICIPANTS_TABLE, ChangeType.INSERT, new=dict(participant))
        return JoinResult(
            success=True,
            participant_count=count,
            session_ready=count >= session["max_players"],
        )

    async def leave_session(self, session_id: str, user_id: str) -> LeaveResult:
        self._check_failure("leave_session")

        participant = self._joined_row(session_id, user_id)
        if participant is None:
            return LeaveResult(
                success=False,
                error="Not a participant of this session",
                error_code=ErrorCode.NOT_A_PARTICIPANT.value,
            )

        old = dict(participant)
        participant["status"] = "left"
        participant["left_at"] = _now()

        session = self.sessions.get(session_id) or {}
        stakes = session.get("stakes_amount") or 0
        if stakes > 0:
            self._credit(
                user_id, stakes, "regular", "session_leave_refund",
                "Stakes refund for leaving session",
            )

        await self._publish(PARTICIPANTS_TABLE, ChangeType.UPDATE, new=dict(participant), old=old)
        return LeaveResult(success=True, refunded_amount=stakes)

    async def add_tokens(
        self,
        user_id: str,
        amount: int,
        token_type: str,
        source: str,
        description: str,
    ) -> None:
        self._check_failure("add_tokens")
        self._credit(user_id, amount, token_type, source, description)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _credit(self, user_id: str, amount: int, token_type: str, source: str, description: str):
        self.token_balances[user_id] = self.token_balances.get(user_id, 0) + amount
        self.token_ledger.append(TokenLedgerEntry(
            user_id=user_id,
            amount=amount,
            token_type=token_type,
            source=source,
            description=description,
        ))

    def _check_failure(self, operation: str):
        self.calls.append(operation)
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _joined_row(self, session_id: str, user_id: str) -> dict[str, Any] | None:
        for row in self.participants.values():
            if (
                row["session_id"] == session_id
                and row["user_id"] == user_id
                and row["status"] == "joined"
            ):
                return row
        return None

    def _joined_count(self, session_id: str) -> int:
        return sum(
            1 for p in self.participants.values()
            if p["session_id"] == session_id and p["status"] == "joined"
        )

    def _matches(self, row: dict[str, Any], query: SessionQuery) -> bool:
        if query.status is not None and row["status"] != query.status:
            return False
        if query.is_private is not None and row["is_private"] != query.is_private:
            return False
        if query.member_id is not None:
            is_creator = row["creator_id"] == query.member_id
            is_member = row["id"] in query.member_session_ids
            if not (is_creator or is_member):
                return False
        return True

    def _with_relations(self, row: dict[str, Any]) -> dict[str, Any]:
        participants = [
            {
                "id": p["id"],
                "user_id": p["user_id"],
                "status": p["status"],
                "joined_at": p["joined_at"],
                "user": self._profile_ref(p["user_id"]),
            }
            for p in self.participants.values()
            if p["session_id"] == row["id"]
        ]
        result = dict(row)
        result["participants"] = participants
        result["creator"] = self._profile_ref(row["creator_id"])
        return result

    def _profile_ref(self, user_id: str) -> dict[str, Any] | None:
        profile = self.profiles.get(user_id)
        return {"full_name": profile["full_name"]} if profile else None

    async def _publish(self, table: str, change_type: ChangeType, new=None, old=None):
        if self.realtime is None:
            return
        await self.realtime.publish(
            ChangeEvent(table=table, change_type=change_type, new=new or {}, old=old or {})
        )
