"""Server-side sessions observed by the audit trail.

Exports the session models, the in-memory store, the validator applied on
every authenticated request, and the manager for sign-in, sign-out,
regeneration and forced logout.
"""

from src.session.errors import NoActiveSessionError, SessionError
from src.session.manager import SessionManager
from src.session.models import (
    SessionData,
    SessionState,
    SessionStats,
    SessionUser,
    ValidationResult,
)
from src.session.store import InMemorySessionStore, SessionStore
from src.session.validator import SessionValidator

__all__ = [
    "SessionError",
    "NoActiveSessionError",
    "SessionData",
    "SessionState",
    "SessionStats",
    "SessionUser",
    "ValidationResult",
    "SessionStore",
    "InMemorySessionStore",
    "SessionValidator",
    "SessionManager",
]
