"""Session state models.

A session moves ANONYMOUS -> ACTIVE on sign-in, stays ACTIVE while
validated requests keep refreshing last_activity, and ends EXPIRED or
DESTROYED. Regeneration after a password change swaps the session id
but keeps the user.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

NO_ACTIVE_SESSION = "no active session"
EXPIRED = "expired"
MALFORMED = "malformed"


class SessionState(str, Enum):
    ANONYMOUS = "ANONYMOUS"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    DESTROYED = "DESTROYED"


@dataclass
class SessionUser:
    """The authenticated user carried by a session."""

    id: str | None
    email: str | None
    name: str | None
    role: str | None

    @classmethod
    def from_user(cls, user: Any) -> "SessionUser":
        """Build from a mapping or an object exposing id/email/name/role."""
        if isinstance(user, dict):
            get = user.get
        else:
            def get(key, default=None):
                return getattr(user, key, default)

        user_id = get("id") or get("_id")
        return cls(
            id=None if user_id is None else str(user_id),
            email=get("email"),
            name=get("name"),
            role=get("role"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "email": self.email, "name": self.name, "role": self.role}


@dataclass
class SessionData:
    """Server-side state of one browsing session.

    Attributes:
        session_id: Opaque identifier sent in the session cookie
        user: Authenticated user, None for an anonymous session
        login_time: When the user signed in
        last_activity: Last validated request; drives expiry
        visit_count: Number of validated requests, including sign-in
        preferences: Free-form user preferences
        theme: UI theme preference
        language: UI language preference
        password_changed_at: Set when the session was regenerated
        state: Lifecycle state
    """

    session_id: str
    user: SessionUser | None = None
    login_time: datetime | None = None
    last_activity: datetime | None = None
    visit_count: int = 0
    preferences: dict[str, Any] = field(default_factory=dict)
    theme: str | None = None
    language: str | None = None
    password_changed_at: datetime | None = None
    state: SessionState = SessionState.ANONYMOUS


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating a session.

    expiring_soon is only ever set on a valid result; the caller layer
    turns it into the X-Session-Warning response header.
    """

    valid: bool
    reason: str | None = None
    expiring_soon: bool = False


@dataclass(frozen=True)
class SessionStats:
    total: int
    active: int
    expired: int
