"""Session error types."""


class SessionError(Exception):
    """Base exception for session errors."""
    pass


class NoActiveSessionError(SessionError):
    """The request carries no valid authenticated session."""

    def __init__(self, reason: str = "no active session"):
        super().__init__(f"No active session: {reason}")
        self.reason = reason
