"""Audit error types.

VALIDATION, NOT_FOUND, STORE_FAILURE and CONFIG_ERROR map onto the classes
below. Only the query surface and startup ever let these escape; the write
path catches them and logs locally.
"""


class AuditError(Exception):
    """Base exception for audit errors."""
    pass


class InvalidAuditQueryError(AuditError):
    """Bad filter, date or granularity input from a caller."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class AuditLogNotFoundError(AuditError):
    """No audit record exists for the requested id."""

    def __init__(self, event_id: str):
        super().__init__(f"Audit log not found: {event_id}")
        self.event_id = event_id


class AuditStoreError(AuditError):
    """Durable store I/O failed or timed out."""

    def __init__(self, message: str, batch_size: int = 0):
        super().__init__(message)
        self.batch_size = batch_size


class AuditConfigError(AuditError):
    """Invalid audit settings or unreachable store at startup."""
    pass
