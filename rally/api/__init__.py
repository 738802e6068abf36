"""
API Module - HTTP and WebSocket interface.

Exposes the engine to clients:
1. Session cost calculation and previews
2. Session listings per tab
3. Join / leave flows
4. Live session lists over WebSocket
"""

from .schemas import (
    # Requests
    PreviewRequest,
    JoinRequest,
    LeaveRequest,
    # Responses
    ErrorResponse,
    SessionCostResponse,
    SessionPreviewResponse,
    SessionListResponse,
    SessionActionResponse,
    QueueStatusResponse,
    HealthResponse,
    # Shared
    NotificationInfo,
    SessionInfo,
    ParticipantInfo,
)
from .service import APIService
from .app import create_app

__all__ = [
    # Requests
    "PreviewRequest",
    "JoinRequest",
    "LeaveRequest",
    # Responses
    "ErrorResponse",
    "SessionCostResponse",
    "SessionPreviewResponse",
    "SessionListResponse",
    "SessionActionResponse",
    "QueueStatusResponse",
    "HealthResponse",
    # Shared
    "NotificationInfo",
    "SessionInfo",
    "ParticipantInfo",
    # Service
    "APIService",
    "create_app",
]
