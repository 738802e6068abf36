"""
Session Models - Sessions as the engine sees them.

Sessions are owned by the backend. The engine reads them, adds a few
derived fields for display, and never writes them back:
- participant_count: participants currently joined
- creator_name: creator's profile name ("Unknown" if missing)
- user_joined: whether the viewing user is among the joined participants
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


UNKNOWN_CREATOR = "Unknown"


class SessionTab(str, Enum):
    """Which slice of sessions a feed shows."""
    MY_SESSIONS = "my-sessions"
    AVAILABLE = "available"
    COMPLETED = "completed"


class SessionStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ParticipantStatus(str, Enum):
    JOINED = "joined"
    LEFT = "left"


@dataclass
class Participant:
    id: str
    user_id: str
    status: str
    joined_at: str | None = None
    full_name: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Participant:
        user = row.get("user") or {}
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            status=row["status"],
            joined_at=row.get("joined_at"),
            full_name=user.get("full_name"),
        )


@dataclass
class Session:
    """A session row plus fields derived for the viewing user."""
    id: str
    creator_id: str
    session_type: str
    max_players: int
    stakes_amount: int
    status: str
    is_private: bool
    created_at: str
    updated_at: str
    format: str | None = None
    location: str | None = None
    notes: str | None = None
    invitation_code: str | None = None

    # Derived at fetch time
    participant_count: int = 0
    creator_name: str = UNKNOWN_CREATOR
    user_joined: bool = False
    participants: list[Participant] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: dict[str, Any], viewer_id: str | None) -> Session:
        """
        Build a Session from a backend row with eager-loaded relations.

        Only joined participants are kept.
        """
        participants = [
            Participant.from_row(p) for p in row.get("participants") or []
            if p.get("status") == ParticipantStatus.JOINED.value
        ]
        creator = row.get("creator") or {}

        return cls(
            id=row["id"],
            creator_id=row["creator_id"],
            session_type=row["session_type"],
            max_players=row.get("max_players", 0),
            stakes_amount=row.get("stakes_amount") or 0,
            status=row["status"],
            is_private=bool(row.get("is_private")),
            created_at=row.get("created_at", ""),
            updated_at=row.get("updated_at", ""),
            format=row.get("format"),
            location=row.get("location"),
            notes=row.get("notes"),
            invitation_code=row.get("invitation_code"),
            participant_count=len(participants),
            creator_name=creator.get("full_name") or UNKNOWN_CREATOR,
            user_joined=any(p.user_id == viewer_id for p in participants),
            participants=participants,
        )

    @property
    def is_full(self) -> bool:
        return self.participant_count >= self.max_players
