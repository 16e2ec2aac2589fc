"""Session storage.

SessionStore is the contract the validator and manager depend on.
InMemorySessionStore keeps sessions in a process-local dict, which is
enough for a single-process deployment and for tests.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Protocol

from src.session.models import SessionData, SessionState, SessionStats, SessionUser

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


class SessionStore(Protocol):
    """Storage backend for server-side sessions."""

    def create(self, user: SessionUser, now: datetime) -> SessionData: ...

    def get(self, session_id: str) -> SessionData | None: ...

    def save(self, session: SessionData) -> None: ...

    def destroy(self, session_id: str) -> bool: ...

    def regenerate(self, session_id: str, now: datetime) -> SessionData | None: ...

    def user_sessions(self, user_id: str) -> list[SessionData]: ...

    def force_logout_user(self, user_id: str) -> int: ...

    def stats(self, now: datetime) -> SessionStats: ...

    def cleanup_expired(self, now: datetime) -> int: ...


class InMemorySessionStore:
    """In-memory session store.

    Args:
        max_age: Inactivity after which a session counts as expired
    """

    def __init__(self, max_age: timedelta = timedelta(hours=1)) -> None:
        self.max_age = max_age
        self._sessions: dict[str, SessionData] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def _is_expired(self, session: SessionData, now: datetime) -> bool:
        if session.last_activity is None:
            return False
        return now - session.last_activity > self.max_age

    def create(self, user: SessionUser, now: datetime) -> SessionData:
        """Start an ACTIVE session for user with its activity clock at now."""
        session = SessionData(
            session_id=new_session_id(),
            user=user,
            login_time=now,
            last_activity=now,
            visit_count=1,
            state=SessionState.ACTIVE,
        )
        self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str) -> SessionData | None:
        return self._sessions.get(session_id)

    def save(self, session: SessionData) -> None:
        self._sessions[session.session_id] = session

    def destroy(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        if session.state == SessionState.ACTIVE:
            session.state = SessionState.DESTROYED
        return True

    def regenerate(self, session_id: str, now: datetime) -> SessionData | None:
        """Move a session to a fresh id, keeping the user and resetting activity.

        Returns:
            The new session, or None if session_id is unknown
        """
        old = self._sessions.pop(session_id, None)
        if old is None:
            return None
        old.state = SessionState.DESTROYED

        session = SessionData(
            session_id=new_session_id(),
            user=old.user,
            login_time=old.login_time,
            last_activity=now,
            visit_count=old.visit_count,
            preferences=dict(old.preferences),
            theme=old.theme,
            language=old.language,
            state=SessionState.ACTIVE,
        )
        self._sessions[session.session_id] = session
        return session

    def user_sessions(self, user_id: str) -> list[SessionData]:
        return [
            s for s in self._sessions.values() if s.user is not None and s.user.id == user_id
        ]

    def force_logout_user(self, user_id: str) -> int:
        """Destroy every session of user_id.

        Returns:
            Number of sessions destroyed
        """
        session_ids = [s.session_id for s in self.user_sessions(user_id)]
        for session_id in session_ids:
            self.destroy(session_id)
        return len(session_ids)

    def stats(self, now: datetime) -> SessionStats:
        total = len(self._sessions)
        expired = sum(1 for s in self._sessions.values() if self._is_expired(s, now))
        return SessionStats(total=total, active=total - expired, expired=expired)

    def cleanup_expired(self, now: datetime) -> int:
        """Drop expired sessions.

        Returns:
            Number of sessions removed
        """
        expired = [s for s in self._sessions.values() if self._is_expired(s, now)]
        for session in expired:
            del self._sessions[session.session_id]
            session.state = SessionState.EXPIRED
        if expired:
            logger.info("Cleaned up %d expired sessions", len(expired))
        return len(expired)
