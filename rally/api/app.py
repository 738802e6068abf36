"""
FastAPI Application - REST and WebSocket API for the session engine.

Endpoints:
    GET    /api/v1/economy/costs                  HP/XP cost of a session
    POST   /api/v1/economy/preview                Pre-session preview and risk check
    GET    /api/v1/users/{user_id}/sessions       Sessions for a tab
    POST   /api/v1/sessions/{id}/join             Join a session
    POST   /api/v1/sessions/{id}/leave            Leave a session (stakes refunded)
    GET    /api/v1/realtime/status                Coordinator queue status
    WS     /api/v1/users/{user_id}/sessions/ws    Live session list

Responses to user flows include the notifications the user would have seen.
All responses are JSON with explicit Pydantic schemas.
"""

from dataclasses import asdict
from typing import Annotated, Optional, Union
import json
import logging
import os

from .. import __version__

# Environment configuration
RALLY_ENV = os.getenv("RALLY_ENV", "development")
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")
RALLY_RETRY_ATTEMPTS = int(os.getenv("RALLY_RETRY_ATTEMPTS", "3"))
RALLY_RETRY_DELAY = float(os.getenv("RALLY_RETRY_DELAY", "1.0"))
RALLY_SUBSCRIBE_TIMEOUT = float(os.getenv("RALLY_SUBSCRIBE_TIMEOUT", "30"))
RALLY_LOG_LEVEL = os.getenv("RALLY_LOG_LEVEL", "INFO")

logger = logging.getLogger(__name__)


def configure_logging(level: str = RALLY_LOG_LEVEL):
    """Root logging for a served app. Runs at startup, never on import."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(service=None):
    """
    Create the FastAPI application.

    Args:
        service: Optional APIService instance (creates new if not provided)

    Returns:
        FastAPI application instance
    """
    try:
        from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Query
        from fastapi.middleware.cors import CORSMiddleware
        from fastapi.responses import JSONResponse
    except ImportError:
        raise ImportError(
            "FastAPI not installed. Install with: pip install fastapi uvicorn"
        )

    from .service import APIService
    from .schemas import (
        # Request models
        PreviewRequest,
        JoinRequest,
        LeaveRequest,
        # Response models
        ErrorResponse,
        SessionCostResponse,
        SessionPreviewResponse,
        SessionListResponse,
        SessionActionResponse,
        QueueStatusResponse,
        HealthResponse,
        # Nested models
        NotificationInfo,
        SessionInfo,
        # Enums
        ErrorCode,
    )
    from ..sessions import SessionTab

    app = FastAPI(
        title="Rally Engine API",
        description="""
Tennis session engine - HP/XP economy and live session lists.

## Session Economy

`GET /economy/costs` returns the HP cost and XP gain of a session.
Costs grow with duration through four tiers with shrinking multipliers
and are capped per session type. Wellbeing sessions restore HP.

## Join / Leave

Joining debits the session stakes; leaving refunds them. Both run as one
atomic backend procedure.

## Error Codes

| Code | Description |
|------|-------------|
| `SESSION_NOT_FOUND` | Session does not exist |
| `INSUFFICIENT_TOKENS` | Not enough tokens for the stakes |
| `JOIN_FAILED` | Join rejected or failed |
| `LEAVE_FAILED` | Leave failed |
| `NOT_A_PARTICIPANT` | User is not in the session |
        """,
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Service instance
    api_service = service or APIService(
        retry_attempts=RALLY_RETRY_ATTEMPTS,
        retry_delay=RALLY_RETRY_DELAY,
        subscribe_timeout=RALLY_SUBSCRIBE_TIMEOUT,
    )
    app.state.service = api_service

    @app.on_event("startup")
    async def on_startup():
        configure_logging()
        logger.info("Rally API starting (env=%s)", RALLY_ENV)

    @app.on_event("shutdown")
    async def on_shutdown():
        api_service.shutdown()

    # =========================================================================
    # Error helpers
    # =========================================================================

    def make_error_response(
        error_code: ErrorCode,
        message: str,
        status_code: int = 400,
        details: Optional[dict] = None,
        notifications: Optional[list] = None,
    ) -> JSONResponse:
        """Create a standardized error response."""
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(
                error=message,
                error_code=error_code,
                details=details,
                notifications=notifications or [],
            ).model_dump(mode="json"),
        )

    def action_error_status(error_code: Optional[ErrorCode]) -> int:
        if error_code is ErrorCode.SESSION_NOT_FOUND:
            return 404
        if error_code is ErrorCode.NOT_AUTHENTICATED:
            return 401
        return 400

    # =========================================================================
    # Economy Endpoints
    # =========================================================================

    @app.get(
        "/api/v1/economy/costs",
        response_model=SessionCostResponse,
        tags=["Economy"],
        summary="HP cost and XP gain of a session",
    )
    async def get_session_costs(
        session_type: Annotated[str, Query(description="match, social_play, training, wellbeing")],
        duration_minutes: Annotated[float, Query(description="Session length in minutes")],
    ) -> SessionCostResponse:
        """
        Calculate the HP/XP effect of a session.

        Unknown session types use the default cost tables.
        Negative `hp_cost` means HP is restored.
        """
        calculation = api_service.calculate_costs(session_type, duration_minutes)
        return _convert_costs(calculation)

    @app.post(
        "/api/v1/economy/preview",
        response_model=SessionPreviewResponse,
        tags=["Economy"],
        summary="Pre-session preview",
    )
    async def preview_session(body: PreviewRequest) -> SessionPreviewResponse:
        """
        Preview text, warnings, HP recommendations and recovery advice.

        When the session would leave fewer than 10 HP, `too_risky` is set and
        shorter alternative durations are suggested.
        """
        result = api_service.preview_session(
            body.session_type.value, body.duration_minutes, body.current_hp,
        )
        preview = result.preview
        return SessionPreviewResponse(
            pre_session_text=preview.pre_session_text,
            smart_warnings=preview.smart_warnings,
            recommendations=preview.recommendations,
            recovery_advice=preview.recovery_advice,
            cost_breakdown=_convert_costs(preview.cost_breakdown),
            too_risky=result.too_risky,
            alternative_durations=result.alternative_durations,
        )

    # =========================================================================
    # Session Endpoints
    # =========================================================================

    @app.get(
        "/api/v1/users/{user_id}/sessions",
        response_model=SessionListResponse,
        tags=["Sessions"],
        summary="List sessions for a tab",
    )
    async def list_sessions(
        user_id: str,
        tab: Annotated[SessionTab, Query(description="my-sessions, available or completed")] = SessionTab.MY_SESSIONS,
    ) -> SessionListResponse:
        """
        List sessions for one user and tab, newest first.

        Transient backend errors are retried with exponential backoff; if
        every retry fails, `error` is set and the list is empty.
        """
        result = await api_service.list_sessions(user_id, tab)
        return _convert_session_list(
            result.user_id, result.tab, result.sessions, result.notifications, result.error,
        )

    @app.post(
        "/api/v1/sessions/{session_id}/join",
        response_model=SessionActionResponse,
        responses={
            400: {"model": ErrorResponse, "description": "Join rejected"},
            404: {"model": ErrorResponse, "description": "Session not found"},
        },
        tags=["Sessions"],
        summary="Join a session",
    )
    async def join_session(
        session_id: str,
        body: JoinRequest,
    ) -> Union[SessionActionResponse, JSONResponse]:
        """Join a session. The stakes are debited in the same transaction."""
        result = await api_service.join_session(session_id, body.user_id)
        if not result.success:
            return make_error_response(
                result.error_code or ErrorCode.JOIN_FAILED,
                result.error or "Failed to join session",
                status_code=action_error_status(result.error_code),
                notifications=_convert_notifications(result.notifications),
            )
        return _convert_action(result)

    @app.post(
        "/api/v1/sessions/{session_id}/leave",
        response_model=SessionActionResponse,
        responses={400: {"model": ErrorResponse, "description": "Leave failed"}},
        tags=["Sessions"],
        summary="Leave a session",
    )
    async def leave_session(
        session_id: str,
        body: LeaveRequest,
    ) -> Union[SessionActionResponse, JSONResponse]:
        """Leave a session. Stakes are refunded in the same transaction."""
        result = await api_service.leave_session(session_id, body.user_id)
        if not result.success:
            return make_error_response(
                result.error_code or ErrorCode.LEAVE_FAILED,
                result.error or "Failed to leave session",
                status_code=action_error_status(result.error_code),
                notifications=_convert_notifications(result.notifications),
            )
        return _convert_action(result)

    @app.get(
        "/api/v1/realtime/status",
        response_model=QueueStatusResponse,
        tags=["Realtime"],
        summary="Subscription coordinator status",
    )
    async def realtime_status() -> QueueStatusResponse:
        """Queue length, open channels and pending requests."""
        status, channels = api_service.queue_status()
        return QueueStatusResponse(**asdict(status), active_channels=channels)

    # =========================================================================
    # WebSocket Endpoint
    # =========================================================================

    @app.websocket("/api/v1/users/{user_id}/sessions/ws")
    async def sessions_websocket(
        websocket: WebSocket,
        user_id: str,
        tab: SessionTab = SessionTab.MY_SESSIONS,
    ):
        """
        WebSocket with the live session list for one tab.

        Messages from server:
        - sessions: Session list changed (includes notifications)
        - error: Error occurred

        Messages from client:
        - ping: Keep-alive
        """
        await websocket.accept()

        async def push(sessions, notifications):
            try:
                await websocket.send_json({
                    "type": "sessions",
                    "payload": _convert_session_list(
                        user_id, tab, sessions, notifications,
                    ).model_dump(mode="json"),
                })
            except (WebSocketDisconnect, RuntimeError):
                logger.debug("Dropping update for closed socket of %s", user_id)

        live = await api_service.open_feed(user_id, tab, push)
        try:
            while True:
                data = await websocket.receive_text()
                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    await websocket.send_json({
                        "type": "error",
                        "payload": {"message": "Invalid JSON"},
                    })
                    continue
                if message.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})
        except WebSocketDisconnect:
            logger.debug("Socket for %s disconnected", user_id)
        finally:
            await api_service.close_feed(live)

    # =========================================================================
    # Health Check
    # =========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["System"],
        summary="Health check",
    )
    async def health_check() -> HealthResponse:
        """Health check endpoint for load balancers."""
        return HealthResponse(
            status="healthy",
            service="rally-engine",
            version=__version__,
        )

    @app.get("/", tags=["System"])
    async def root():
        """Root endpoint with API info."""
        return {
            "name": "Rally Engine API",
            "version": __version__,
            "environment": RALLY_ENV,
            "docs": "/api/docs",
            "health": "/health",
        }

    # =========================================================================
    # Conversion Helpers
    # =========================================================================

    def _convert_costs(calculation) -> SessionCostResponse:
        return SessionCostResponse(**asdict(calculation))

    def _convert_notifications(notifications) -> list[NotificationInfo]:
        return [NotificationInfo(level=n.level, message=n.message) for n in notifications]

    def _convert_session_list(user_id, tab, sessions, notifications, error=None) -> SessionListResponse:
        return SessionListResponse(
            user_id=user_id,
            tab=tab,
            sessions=[SessionInfo(**asdict(s)) for s in sessions],
            count=len(sessions),
            error=error,
            notifications=_convert_notifications(notifications),
        )

    def _convert_action(result) -> SessionActionResponse:
        return SessionActionResponse(
            session_id=result.session_id,
            success=result.success,
            participant_count=result.participant_count,
            session_ready=result.session_ready,
            refunded_amount=result.refunded_amount,
            notifications=_convert_notifications(result.notifications),
        )

    return app


# For running directly: uvicorn rally.api.app:app
app = create_app()
