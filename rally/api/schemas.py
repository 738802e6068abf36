"""
Pydantic Schemas for API - Request/response models for OpenAPI.

These models define the contract between clients and the engine.
Responses that come out of a user flow carry the notifications the user
would have seen (`notifications: [{level, message}]`).

Error Codes:
- SESSION_NOT_FOUND: Session does not exist
- INSUFFICIENT_TOKENS: Not enough tokens to cover the stakes
- JOIN_FAILED: Join rejected or failed
- LEAVE_FAILED: Leave failed
- NOT_A_PARTICIPANT: User has no joined row in the session
- NOT_AUTHENTICATED: No user given
- VALIDATION_ERROR: Request parameters are invalid
- INTERNAL_ERROR: Unexpected failure
"""

from typing import Optional
from pydantic import BaseModel, Field

from ..errors import ErrorCode
from ..economy.tables import SessionType
from ..notifications import NotificationLevel
from ..sessions.models import SessionTab


# =============================================================================
# Nested Models
# =============================================================================

class NotificationInfo(BaseModel):
    """A user-visible message produced while handling the request."""
    level: NotificationLevel
    message: str


class TierBreakdownInfo(BaseModel):
    """Minutes spent in each duration tier."""
    tier1_minutes: float = 0
    tier2_minutes: float = 0
    tier3_minutes: float = 0
    tier4_minutes: float = 0


class ParticipantInfo(BaseModel):
    """A joined participant."""
    id: str
    user_id: str
    status: str
    joined_at: Optional[str] = None
    full_name: Optional[str] = None


class SessionInfo(BaseModel):
    """A session with fields derived for the viewing user."""
    id: str
    creator_id: str
    session_type: str
    format: Optional[str] = None
    max_players: int
    stakes_amount: int = 0
    location: Optional[str] = None
    notes: Optional[str] = None
    status: str
    is_private: bool = False
    invitation_code: Optional[str] = None
    created_at: str
    updated_at: str

    participant_count: int = 0
    creator_name: str = "Unknown"
    user_joined: bool = False
    participants: list[ParticipantInfo] = Field(default_factory=list)


# =============================================================================
# Request Models
# =============================================================================

class PreviewRequest(BaseModel):
    """Request for a pre-session preview."""
    session_type: SessionType = Field(..., description="match, social_play, training or wellbeing")
    duration_minutes: float = Field(..., ge=0, description="Planned session length in minutes")
    current_hp: float = Field(100, ge=0, description="Player's current HP")


class JoinRequest(BaseModel):
    """Request to join a session."""
    user_id: str = Field(..., min_length=1)


class LeaveRequest(BaseModel):
    """Request to leave a session."""
    user_id: str = Field(..., min_length=1)


# =============================================================================
# Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str = Field(..., description="Human-readable error message")
    error_code: ErrorCode = Field(..., description="Machine-readable error code")
    details: Optional[dict] = Field(None, description="Additional error details")
    notifications: list[NotificationInfo] = Field(default_factory=list)
    api_version: str = Field("v1", description="API version")


class SessionCostResponse(BaseModel):
    """HP/XP outcome of one session."""
    session_type: str
    duration_minutes: float
    hp_cost: int = Field(..., description="Positive = HP spent, negative = HP restored")
    xp_gain: float
    base_hp_cost: int
    max_hp_cost: int
    tier1_cost: int = 0
    tier2_cost: int = 0
    tier3_cost: int = 0
    tier4_cost: int = 0
    cap_reached: bool = False
    breakdown: TierBreakdownInfo = Field(default_factory=TierBreakdownInfo)
    api_version: str = "v1"


class SessionPreviewResponse(BaseModel):
    """Everything a client shows before a session starts."""
    pre_session_text: str
    smart_warnings: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    recovery_advice: str = ""
    cost_breakdown: SessionCostResponse

    too_risky: bool = Field(False, description="Session would leave fewer than 10 HP")
    alternative_durations: list[int] = Field(
        default_factory=list, description="Shorter durations that keep 20 HP in reserve"
    )
    api_version: str = "v1"


class SessionListResponse(BaseModel):
    """Sessions for one user and tab."""
    user_id: str
    tab: SessionTab
    sessions: list[SessionInfo]
    count: int
    error: Optional[str] = None
    notifications: list[NotificationInfo] = Field(default_factory=list)
    api_version: str = "v1"


class SessionActionResponse(BaseModel):
    """Result of a join or leave."""
    session_id: str
    success: bool
    participant_count: Optional[int] = None
    session_ready: bool = False
    refunded_amount: int = 0
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    notifications: list[NotificationInfo] = Field(default_factory=list)
    api_version: str = "v1"


class QueueStatusResponse(BaseModel):
    """Realtime coordinator diagnostics."""
    queue_length: int
    active_count: int
    request_count: int
    failed_count: int
    processing: bool
    active_channels: list[str] = Field(default_factory=list)
    api_version: str = "v1"


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    service: str
    version: str
