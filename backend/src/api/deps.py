# backend/src/api/deps.py
"""Shared FastAPI dependencies: session resolution and admin authorization."""

from fastapi import Depends, HTTPException, Request, Response

from src.audit.factory import security_event
from src.audit.middleware import describe_request
from src.audit.models import AuditAction
from src.audit.setup import get_audit_service
from src.config import settings
from src.session.models import SessionData, ValidationResult
from src.session.setup import get_session_store, get_session_validator

SESSION_WARNING_HEADER = "X-Session-Warning"
SESSION_WARNING_MESSAGE = "Session expiring soon"


async def _resolve_session(
    request: Request, response: Response
) -> tuple[SessionData | None, ValidationResult]:
    store = get_session_store()
    validator = get_session_validator()
    if store is None or validator is None:
        raise HTTPException(status_code=503, detail="Sessions not initialized")

    session_id = request.cookies.get(settings.session_cookie_name)
    session = store.get(session_id) if session_id else None
    result = await validator.validate(session, describe_request(request))

    if not result.valid:
        return None, result

    if result.expiring_soon:
        response.headers[SESSION_WARNING_HEADER] = SESSION_WARNING_MESSAGE
    request.state.session_id = session.session_id
    request.state.user = session.user
    return session, result


async def get_optional_session(request: Request, response: Response) -> SessionData | None:
    """The validated session of the request, or None."""
    session, _ = await _resolve_session(request, response)
    return session


async def get_current_session(request: Request, response: Response) -> SessionData:
    """The validated session of the request.

    Raises:
        HTTPException: 401 with the validation reason if there is none
    """
    session, result = await _resolve_session(request, response)
    if session is None:
        raise HTTPException(status_code=401, detail=f"Session invalid: {result.reason}")
    return session


async def require_admin(
    request: Request,
    session: SessionData = Depends(get_current_session),
) -> SessionData:
    """Allow only sessions whose user has the admin role.

    Raises:
        HTTPException: 403 for non-admin users (recorded as UNAUTHORIZED_ACCESS)
    """
    if session.user is None or session.user.role != "admin":
        service = get_audit_service()
        if service is not None:
            service.submit_nowait(
                security_event(
                    AuditAction.UNAUTHORIZED_ACCESS,
                    session.user,
                    describe_request(request),
                    {"requiredRole": "admin"},
                    status_code=403,
                )
            )
        raise HTTPException(status_code=403, detail="Admin privileges required")
    return session
