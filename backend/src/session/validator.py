"""Session lifecycle validation.

Rules are applied in order:
1. No session, or no user on it -> "no active session"
2. Inactive for longer than max_age -> "expired"; the session is destroyed
   and a SESSION_EXPIRE event is recorded
3. Missing user.id/email/name/role or last_activity -> "malformed"

A session that passes is touched: last_activity moves to now and
visit_count increments. When the inactivity before this request exceeded
warning_after, the result carries expiring_soon.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from src.audit.factory import RequestDescriptor, session_event
from src.audit.models import AuditAction, AuditPriority, AuditStatus
from src.audit.service import AuditService
from src.session.models import (
    EXPIRED,
    MALFORMED,
    NO_ACTIVE_SESSION,
    SessionData,
    SessionState,
    ValidationResult,
)
from src.session.store import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = timedelta(hours=1)
DEFAULT_WARNING_AFTER = timedelta(minutes=55)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_well_formed(session: SessionData) -> bool:
    user = session.user
    if user is None or session.last_activity is None:
        return False
    return all((user.id, user.email, user.name, user.role))


class SessionValidator:
    """Validates sessions on every authenticated request.

    Args:
        store: Session storage; expired sessions are destroyed in it
        audit: Audit service receiving SESSION_EXPIRE, or None to skip recording
        max_age: Inactivity cutoff
        warning_after: Inactivity after which expiring_soon is reported
        clock: Returns the current time; injected for tests
    """

    def __init__(
        self,
        store: SessionStore,
        audit: AuditService | None = None,
        max_age: timedelta = DEFAULT_MAX_AGE,
        warning_after: timedelta = DEFAULT_WARNING_AFTER,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.audit = audit
        self.max_age = max_age
        self.warning_after = warning_after
        self.clock = clock

    async def validate(
        self,
        session: SessionData | None,
        request: RequestDescriptor | None = None,
    ) -> ValidationResult:
        """Validate session and refresh its activity clock when valid.

        Args:
            session: The session attached to the request, if any
            request: The request being served, recorded on SESSION_EXPIRE

        Returns:
            ValidationResult with the failure reason or the warning flag
        """
        if session is None or session.user is None:
            return ValidationResult(valid=False, reason=NO_ACTIVE_SESSION)

        now = self.clock()
        idle = now - session.last_activity if session.last_activity is not None else None

        if idle is not None and idle > self.max_age:
            await self._expire(session, idle, request)
            return ValidationResult(valid=False, reason=EXPIRED)

        if not _is_well_formed(session):
            return ValidationResult(valid=False, reason=MALFORMED)

        session.last_activity = now
        session.visit_count += 1
        self.store.save(session)

        return ValidationResult(valid=True, expiring_soon=idle > self.warning_after)

    async def _expire(
        self,
        session: SessionData,
        idle: timedelta,
        request: RequestDescriptor | None,
    ) -> None:
        self.store.destroy(session.session_id)
        session.state = SessionState.EXPIRED
        logger.info(
            "Session %s expired after %ds of inactivity",
            session.session_id[:8],
            int(idle.total_seconds()),
        )

        if self.audit is None:
            return
        await self.audit.submit(
            session_event(
                AuditAction.SESSION_EXPIRE,
                session.user,
                request,
                session_id=session.session_id,
                details={
                    "lastActivity": session.last_activity.isoformat(),
                    "idleSeconds": int(idle.total_seconds()),
                },
                status=AuditStatus.WARNING,
                priority=AuditPriority.HIGH,
            )
        )
