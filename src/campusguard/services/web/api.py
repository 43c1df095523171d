"""
CampusGuard HTTP API

Thin FastAPI layer over the session, check-in and SOS services plus the
WebSocket endpoint used as the real-time transport. The calling account is
identified by the X-User-Id header set by the upstream gateway.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ...models.account import Account
from ...models.alert import AlertSeverity, AlertStatus, AlertTrigger
from ...models.safety import CheckInResponse, LocationPoint, SafetySession, SessionMode
from ..container import ServiceContainer
from ..realtime.publisher import SECURITY_TOPIC, user_topic
from ..safety.exceptions import (
    AlertNotFound, GrantExpired, GrantNotFound, InvalidTransition, NoPendingCheckIn,
    SafetyError, SessionClosed, SessionConflict, SessionNotFound, StaleVersion
)
from .websocket_hub import WebSocketHub


logger = logging.getLogger(__name__)


ERROR_STATUS = {
    SessionNotFound: 404,
    AlertNotFound: 404,
    GrantNotFound: 404,
    SessionConflict: 409,
    SessionClosed: 409,
    NoPendingCheckIn: 409,
    InvalidTransition: 409,
    StaleVersion: 409,
    GrantExpired: 410,
}


class LocationModel(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = None
    address: Optional[str] = None


class StartSessionRequest(BaseModel):
    mode: SessionMode = SessionMode.JOURNEY
    destination: Optional[str] = None
    duration_seconds: Optional[int] = Field(None, gt=0)
    check_in_interval_seconds: Optional[int] = Field(None, gt=0)
    recipients: List[str] = []
    grant_seconds: Optional[int] = Field(None, gt=0)
    location: Optional[LocationModel] = None


class CheckInRequest(BaseModel):
    response: CheckInResponse
    check_in_id: Optional[str] = None
    location: Optional[LocationModel] = None


class SettingsRequest(BaseModel):
    check_in_interval_seconds: Optional[int] = Field(None, gt=0)
    max_history_points: Optional[int] = Field(None, ge=1)


class GrantRequest(BaseModel):
    recipient_id: str
    grant_seconds: Optional[int] = Field(None, gt=0)


class SOSRequest(BaseModel):
    message: Optional[str] = None
    severity: AlertSeverity = AlertSeverity.HIGH
    triggered_by: AlertTrigger = AlertTrigger.MANUAL
    session_id: Optional[str] = None
    location: Optional[LocationModel] = None


class ResolveRequest(BaseModel):
    resolution: Optional[str] = None


def create_app(services: ServiceContainer, hub: Optional[WebSocketHub] = None,
               start_scheduler: bool = True) -> FastAPI:
    """
    Build the API application.

    Args:
        services: wired CampusGuard services
        hub: WebSocket hub backing the services' publisher, if any
        start_scheduler: run the check-in scheduler for the app's lifetime
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_scheduler:
            await services.scheduler.start()
        yield
        await services.shutdown()

    app = FastAPI(
        title="CampusGuard",
        description="Safety sessions, check-ins and SOS alerts",
        version=services.config.get('app.version', '1.0.0'),
        lifespan=lifespan
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=services.config.get('web.cors_origins', ["*"]),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SafetyError)
    async def safety_error_handler(request: Request, exc: SafetyError):
        status = next((code for error, code in ERROR_STATUS.items() if isinstance(exc, error)), 400)
        return JSONResponse(status_code=status, content={"error": type(exc).__name__, "detail": str(exc)})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"error": "InvalidRequest", "detail": str(exc)})

    def current_user(x_user_id: Optional[str] = Header(None)) -> Account:
        if not x_user_id:
            raise HTTPException(status_code=401, detail="Missing user identity")
        account = services.accounts.get_account(x_user_id)
        if account is None or not account.active:
            raise HTTPException(status_code=401, detail="Unknown or inactive account")
        return account

    def require_staff(user: Account = Depends(current_user)) -> Account:
        if not user.is_staff(services.accounts.staff_roles):
            raise HTTPException(status_code=403, detail="Staff role required")
        return user

    def visible_session(session_id: str, user: Account) -> SafetySession:
        session = services.sessions.get_session(session_id)
        now = services.clock.now()
        if (session.owner_id == user.id
                or user.is_staff(services.accounts.staff_roles)
                or any(grant.recipient_id == user.id for grant in session.valid_grants(now))):
            return session
        raise SessionNotFound(f"Session {session_id} not found")

    def to_point(location: Optional[LocationModel]) -> Optional[LocationPoint]:
        if location is None:
            return None
        return LocationPoint(
            latitude=location.latitude,
            longitude=location.longitude,
            timestamp=services.clock.now(),
            accuracy=location.accuracy,
            address=location.address
        )

    # Health

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "scheduler": services.scheduler.get_status(),
            "notifications": services.dispatcher.get_statistics(),
            "database": services.db.get_stats()
        }

    # Sessions

    @app.post("/api/sessions", status_code=201)
    async def start_session(request: StartSessionRequest, user: Account = Depends(current_user)):
        session = await services.sessions.start_session(
            owner_id=user.id,
            mode=request.mode,
            destination=request.destination,
            duration_seconds=request.duration_seconds,
            check_in_interval_seconds=request.check_in_interval_seconds,
            recipients=request.recipients,
            grant_seconds=request.grant_seconds,
            location=to_point(request.location)
        )
        return session.to_dict()

    @app.get("/api/sessions/active")
    async def get_active_session(user: Account = Depends(current_user)):
        session = services.sessions.get_active_session(user.id)
        if session is None:
            raise HTTPException(status_code=404, detail="No active session")
        return session.to_dict()

    @app.get("/api/sessions/history")
    async def get_history(limit: int = Query(10, ge=1, le=100), offset: int = Query(0, ge=0),
                          user: Account = Depends(current_user)):
        return [session.to_dict() for session in services.sessions.get_history(user.id, limit, offset)]

    @app.get("/api/sessions/shared")
    async def get_shared_with_me(user: Account = Depends(current_user)):
        return [session.to_dict() for session in services.sessions.get_shared_with(user.id)]

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str, user: Account = Depends(current_user)):
        return visible_session(session_id, user).to_dict()

    @app.post("/api/sessions/{session_id}/complete")
    async def complete_session(session_id: str, user: Account = Depends(current_user)):
        return (await services.sessions.complete_session(session_id, owner_id=user.id)).to_dict()

    @app.post("/api/sessions/{session_id}/cancel")
    async def cancel_session(session_id: str, user: Account = Depends(current_user)):
        return (await services.sessions.cancel_session(session_id, owner_id=user.id)).to_dict()

    @app.post("/api/sessions/{session_id}/check-ins")
    async def respond_to_check_in(session_id: str, request: CheckInRequest,
                                  user: Account = Depends(current_user)):
        result = await services.sessions.respond_to_check_in(
            session_id,
            request.response,
            check_in_id=request.check_in_id,
            location=to_point(request.location),
            owner_id=user.id
        )
        return {
            "session": result.session.to_dict(),
            "check_in": result.check_in.to_dict(),
            "escalated": result.escalated,
            "notified": result.escalation.recipients if result.escalation else [],
            "alert_id": result.escalation.alert_id if result.escalation else None,
            "escalation_deferred": bool(result.escalation and result.escalation.deferred)
        }

    @app.get("/api/sessions/{session_id}/check-ins")
    async def list_check_ins(session_id: str, user: Account = Depends(current_user)):
        visible_session(session_id, user)
        return [check_in.to_dict() for check_in in services.sessions.list_check_ins(session_id)]

    @app.post("/api/sessions/{session_id}/location")
    async def update_location(session_id: str, request: LocationModel, user: Account = Depends(current_user)):
        session = await services.sessions.update_location(
            session_id,
            request.latitude,
            request.longitude,
            accuracy=request.accuracy,
            address=request.address,
            owner_id=user.id
        )
        return session.to_dict()

    @app.patch("/api/sessions/{session_id}/settings")
    async def update_settings(session_id: str, request: SettingsRequest, user: Account = Depends(current_user)):
        session = await services.sessions.update_settings(
            session_id,
            check_in_interval_seconds=request.check_in_interval_seconds,
            max_history_points=request.max_history_points,
            owner_id=user.id
        )
        return session.to_dict()

    @app.post("/api/sessions/{session_id}/grants", status_code=201)
    async def add_grant(session_id: str, request: GrantRequest, user: Account = Depends(current_user)):
        grant = await services.sessions.add_grant(
            session_id, request.recipient_id, request.grant_seconds, owner_id=user.id
        )
        return grant.to_dict()

    @app.delete("/api/sessions/{session_id}/grants/{token}")
    async def revoke_grant(session_id: str, token: str, user: Account = Depends(current_user)):
        grant = await services.sessions.revoke_grant(session_id, token, owner_id=user.id)
        return grant.to_dict()

    @app.get("/api/shared/{token}")
    async def view_shared_location(token: str):
        session = services.sessions.view_shared_location(token)
        return {
            "session_id": session.id,
            "owner": services.accounts.display_name(session.owner_id),
            "mode": session.mode.value,
            "status": session.status.value,
            "destination": session.destination,
            "current_location": session.current_location.to_dict() if session.current_location else None,
            "location_history": [point.to_dict() for point in session.location_history]
        }

    # SOS alerts

    @app.post("/api/sos", status_code=201)
    async def create_alert(request: SOSRequest, user: Account = Depends(current_user)):
        alert = await services.sos.create_alert(
            owner_id=user.id,
            location=to_point(request.location),
            message=request.message,
            severity=request.severity,
            triggered_by=request.triggered_by,
            session_id=request.session_id
        )
        return alert.to_dict()

    @app.get("/api/sos")
    async def list_alerts(status: Optional[AlertStatus] = None, page: int = Query(1, ge=1),
                          limit: int = Query(20, ge=1, le=100), staff: Account = Depends(require_staff)):
        listing = services.sos.list_alerts(status, page, limit)
        listing['alerts'] = [alert.to_dict() for alert in listing['alerts']]
        return listing

    @app.get("/api/sos/{alert_id}")
    async def get_alert(alert_id: str, user: Account = Depends(current_user)):
        alert = services.sos.get_alert(alert_id)
        if alert.owner_id != user.id and not user.is_staff(services.accounts.staff_roles):
            raise AlertNotFound(f"Alert {alert_id} not found")
        return alert.to_dict()

    @app.post("/api/sos/{alert_id}/acknowledge")
    async def acknowledge_alert(alert_id: str, staff: Account = Depends(require_staff)):
        return (await services.sos.acknowledge(alert_id, staff.id)).to_dict()

    @app.post("/api/sos/{alert_id}/resolve")
    async def resolve_alert(alert_id: str, request: ResolveRequest, staff: Account = Depends(require_staff)):
        return (await services.sos.resolve(alert_id, staff.id, request.resolution)).to_dict()

    # Staff visibility

    @app.get("/api/notifications/failed")
    async def failed_notifications(limit: int = Query(50, ge=1, le=500), staff: Account = Depends(require_staff)):
        return [
            {
                "job_id": failure.job_id,
                "recipient_id": failure.recipient_id,
                "failed_channels": failure.failed_channels,
                "detail": str(failure)
            }
            for failure in services.dispatcher.failed_deliveries(limit)
        ]

    # Real-time

    if hub is not None:
        @app.websocket("/ws/{topic}")
        async def websocket_endpoint(websocket: WebSocket, topic: str, user_id: str = Query(...)):
            account = services.accounts.get_account(user_id)
            allowed = account is not None and account.active and (
                topic == user_topic(account.id)
                or (topic == SECURITY_TOPIC and account.is_staff(services.accounts.staff_roles))
            )
            if not allowed:
                await websocket.close(code=4403)
                return

            client_id = f"{user_id}:{uuid.uuid4().hex[:8]}"
            await hub.connect(websocket, topic, client_id)
            try:
                while True:
                    data = await websocket.receive_text()
                    if data == "ping":
                        await websocket.send_text("pong")
            except WebSocketDisconnect:
                hub.disconnect(topic, client_id)

    return app
