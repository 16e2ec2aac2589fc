"""Session lifecycle operations that are recorded in the audit trail.

SessionManager wraps a SessionStore and records each transition:
- sign_in: SESSION_CREATE and USER_SIGNIN
- sign_out: SESSION_DESTROY and USER_SIGNOUT
- regenerate_after_password_change: PASSWORD_CHANGE
- force_logout: USER_FORCE_LOGOUT (security-tagged)
- cleanup_expired: SESSION_CLEANUP
"""

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from src.audit.factory import (
    RequestDescriptor,
    auth_event,
    security_event,
    session_event,
    system_event,
)
from src.audit.models import AuditAction, AuditEvent
from src.audit.service import AuditService
from src.session.errors import NoActiveSessionError
from src.session.models import SessionData, SessionStats, SessionUser
from src.session.store import SessionStore

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class SessionManager:
    """Session operations with audit recording.

    Args:
        store: Session storage
        audit: Audit service, or None to skip recording
        clock: Returns the current time; injected for tests
    """

    def __init__(
        self,
        store: SessionStore,
        audit: AuditService | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.audit = audit
        self.clock = clock

    def _record(self, *events: AuditEvent) -> None:
        if self.audit is None:
            return
        for event in events:
            self.audit.submit_nowait(event)

    async def sign_in(self, user: Any, request: RequestDescriptor | None = None) -> SessionData:
        """Create a session for an authenticated user."""
        session = self.store.create(SessionUser.from_user(user), self.clock())
        self._record(
            session_event(
                AuditAction.SESSION_CREATE,
                session.user,
                request,
                session_id=session.session_id,
                details={"loginTime": _iso(session.login_time)},
            ),
            auth_event(AuditAction.USER_SIGNIN, session.user, request),
        )
        return session

    async def sign_out(
        self, session: SessionData | None, request: RequestDescriptor | None = None
    ) -> bool:
        """Destroy session. Returns False when there was nothing to destroy."""
        if session is None or not self.store.destroy(session.session_id):
            return False
        self._record(
            session_event(
                AuditAction.SESSION_DESTROY, session.user, request, session_id=session.session_id
            ),
            auth_event(AuditAction.USER_SIGNOUT, session.user, request),
        )
        return True

    async def regenerate_after_password_change(
        self, session: SessionData, request: RequestDescriptor | None = None
    ) -> SessionData:
        """Issue a new session id for the same user and reset its activity clock.

        Raises:
            NoActiveSessionError: If session is no longer in the store
        """
        now = self.clock()
        regenerated = self.store.regenerate(session.session_id, now)
        if regenerated is None:
            raise NoActiveSessionError("session not found")
        regenerated.password_changed_at = now
        self.store.save(regenerated)
        self._record(auth_event(AuditAction.PASSWORD_CHANGE, regenerated.user, request))
        return regenerated

    async def force_logout(
        self,
        user_id: str,
        admin: Any = None,
        request: RequestDescriptor | None = None,
    ) -> int:
        """Destroy every session of user_id.

        Returns:
            Number of sessions destroyed
        """
        count = self.store.force_logout_user(user_id)
        logger.info("Forced logout of user %s from %d sessions", user_id, count)
        self._record(
            security_event(
                AuditAction.USER_FORCE_LOGOUT,
                admin,
                request,
                {"targetUserId": user_id, "sessionsTerminated": count},
            )
        )
        return count

    def update_preferences(
        self,
        session: SessionData | None,
        preferences: dict[str, Any] | None = None,
        theme: str | None = None,
        language: str | None = None,
    ) -> SessionData:
        """Store UI preferences on the session.

        Raises:
            NoActiveSessionError: If there is no authenticated session
        """
        if session is None or session.user is None:
            raise NoActiveSessionError()
        if preferences is not None:
            session.preferences = dict(preferences)
        if theme is not None:
            session.theme = theme
        if language is not None:
            session.language = language
        self.store.save(session)
        return session

    def session_info(self, session: SessionData | None) -> dict[str, Any]:
        if session is None or session.user is None:
            return {"sessionExists": False}
        return {
            "sessionExists": True,
            "sessionId": session.session_id,
            "user": session.user.to_dict(),
            "loginTime": _iso(session.login_time),
            "lastActivity": _iso(session.last_activity),
            "visitCount": session.visit_count,
            "preferences": session.preferences,
            "theme": session.theme,
            "language": session.language,
        }

    def stats(self) -> SessionStats:
        return self.store.stats(self.clock())

    async def cleanup_expired(self) -> int:
        """Purge expired sessions and record how many were removed."""
        now = self.clock()
        stats_before = self.store.stats(now)
        removed = self.store.cleanup_expired(now)
        self._record(
            system_event(
                AuditAction.SESSION_CLEANUP,
                {"deletedCount": removed, "totalBefore": stats_before.total},
            )
        )
        return removed
