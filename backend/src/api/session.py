# backend/src/api/session.py
"""Session API endpoints: session info, preferences and forced logout."""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from src.api.deps import get_current_session, get_optional_session, require_admin
from src.audit.middleware import describe_request
from src.session.manager import SessionManager
from src.session.models import SessionData
from src.session.setup import get_session_manager


class SessionPreferencesRequest(BaseModel):
    preferences: dict[str, Any] | None = None
    theme: str | None = None
    language: str | None = None


class SessionPreferencesResponse(BaseModel):
    message: str
    preferences: dict[str, Any]
    theme: str | None
    language: str | None


class ForceLogoutResponse(BaseModel):
    user_id: str
    deleted_count: int
    message: str


router = APIRouter(prefix="/api/session", tags=["session"])


def _manager() -> SessionManager:
    manager = get_session_manager()
    if manager is None:
        raise HTTPException(status_code=503, detail="Sessions not initialized")
    return manager


@router.get("")
async def get_session_info(
    session: SessionData | None = Depends(get_optional_session),
) -> dict[str, Any]:
    """Describe the caller's session, or report that there is none."""
    return _manager().session_info(session)


@router.put("/preferences", response_model=SessionPreferencesResponse)
async def update_session_preferences(
    body: SessionPreferencesRequest,
    session: SessionData = Depends(get_current_session),
) -> SessionPreferencesResponse:
    """Store UI preferences on the caller's session."""
    updated = _manager().update_preferences(
        session, preferences=body.preferences, theme=body.theme, language=body.language
    )
    return SessionPreferencesResponse(
        message="Session preferences updated",
        preferences=updated.preferences,
        theme=updated.theme,
        language=updated.language,
    )


@router.delete("/force-logout/{user_id}", response_model=ForceLogoutResponse)
async def force_logout_user(
    user_id: str,
    request: Request,
    admin: SessionData = Depends(require_admin),
) -> ForceLogoutResponse:
    """Terminate every session of a user (admin only)."""
    count = await _manager().force_logout(user_id, admin.user, describe_request(request))
    return ForceLogoutResponse(
        user_id=user_id,
        deleted_count=count,
        message=f"Logged out user from {count} sessions",
    )


class SessionStatsResponse(BaseModel):
    total: int
    active: int
    expired: int


class UserSessionResponse(BaseModel):
    session_id: str
    login_time: datetime | None
    last_activity: datetime | None
    visit_count: int


@router.get("/stats", response_model=SessionStatsResponse)
async def get_session_stats(
    admin: SessionData = Depends(require_admin),
) -> SessionStatsResponse:
    """Count stored sessions by activity (admin only)."""
    stats = _manager().stats()
    return SessionStatsResponse(total=stats.total, active=stats.active, expired=stats.expired)


@router.get("/users/{user_id}", response_model=list[UserSessionResponse])
async def get_user_sessions(
    user_id: str,
    admin: SessionData = Depends(require_admin),
) -> list[UserSessionResponse]:
    """List the sessions of a user (admin only)."""
    return [
        UserSessionResponse(
            session_id=s.session_id,
            login_time=s.login_time,
            last_activity=s.last_activity,
            visit_count=s.visit_count,
        )
        for s in _manager().store.user_sessions(user_id)
    ]
