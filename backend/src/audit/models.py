"""Audit event models and enums.

Classes:
    AuditAction: Closed set of recordable actions
    AuditStatus: Outcome of the audited operation
    AuditPriority: Severity classification driving the write path
    ResourceType: Kind of entity an event refers to
    ActorRef, ResourceRef, RequestContext, ChangeSet, RequestMetrics:
        Optional sub-records of an event
    AuditEvent: Immutable description of one occurrence

AuditEvent is a frozen dataclass. Instances are built through
src.audit.factory.create_audit_event, which stamps the id, the timestamp
and the derived tag set exactly once.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


class AuditAction(str, Enum):
    """Classification of audit events."""

    # Authentication
    USER_SIGNUP = "USER_SIGNUP"
    USER_SIGNIN = "USER_SIGNIN"
    USER_SIGNOUT = "USER_SIGNOUT"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    PASSWORD_RESET = "PASSWORD_RESET"

    # Session
    SESSION_CREATE = "SESSION_CREATE"
    SESSION_DESTROY = "SESSION_DESTROY"
    SESSION_EXPIRE = "SESSION_EXPIRE"

    # User management
    USER_CREATE = "USER_CREATE"
    USER_UPDATE = "USER_UPDATE"
    USER_DELETE = "USER_DELETE"
    USER_PROFILE_UPDATE = "USER_PROFILE_UPDATE"

    # Land management
    LAND_CREATE = "LAND_CREATE"
    LAND_UPDATE = "LAND_UPDATE"
    LAND_DELETE = "LAND_DELETE"
    LAND_VIEW = "LAND_VIEW"

    # Listings
    LISTING_CREATE = "LISTING_CREATE"
    LISTING_UPDATE = "LISTING_UPDATE"
    LISTING_DELETE = "LISTING_DELETE"
    LISTING_VIEW = "LISTING_VIEW"
    LISTING_APPROVE = "LISTING_APPROVE"
    LISTING_REJECT = "LISTING_REJECT"

    # Transactions
    TRANSACTION_CREATE = "TRANSACTION_CREATE"
    TRANSACTION_UPDATE = "TRANSACTION_UPDATE"
    TRANSACTION_DELETE = "TRANSACTION_DELETE"
    TRANSACTION_APPROVE = "TRANSACTION_APPROVE"
    TRANSACTION_REJECT = "TRANSACTION_REJECT"
    TRANSACTION_COMPLETE = "TRANSACTION_COMPLETE"

    # System lifecycle
    SYSTEM_STARTUP = "SYSTEM_STARTUP"
    SYSTEM_SHUTDOWN = "SYSTEM_SHUTDOWN"
    SYSTEM_ERROR = "SYSTEM_ERROR"
    SYSTEM_WARNING = "SYSTEM_WARNING"
    SESSION_CLEANUP = "SESSION_CLEANUP"
    DATABASE_BACKUP = "DATABASE_BACKUP"
    DATABASE_RESTORE = "DATABASE_RESTORE"

    # Admin
    ADMIN_LOGIN = "ADMIN_LOGIN"
    ADMIN_ACTION = "ADMIN_ACTION"
    USER_FORCE_LOGOUT = "USER_FORCE_LOGOUT"
    SYSTEM_MAINTENANCE = "SYSTEM_MAINTENANCE"

    # Files
    FILE_UPLOAD = "FILE_UPLOAD"
    FILE_DELETE = "FILE_DELETE"
    FILE_DOWNLOAD = "FILE_DOWNLOAD"
    FILE_VIEW = "FILE_VIEW"

    # API
    API_REQUEST = "API_REQUEST"
    API_RESPONSE = "API_RESPONSE"
    API_ERROR = "API_ERROR"

    # Security
    LOGIN_ATTEMPT = "LOGIN_ATTEMPT"
    LOGIN_FAILED = "LOGIN_FAILED"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"


class AuditStatus(str, Enum):
    """Outcome of the audited operation."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    PENDING = "PENDING"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"


class AuditPriority(str, Enum):
    """Severity classification, ordered LOW < MEDIUM < HIGH < CRITICAL."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    AuditPriority.LOW: 0,
    AuditPriority.MEDIUM: 1,
    AuditPriority.HIGH: 2,
    AuditPriority.CRITICAL: 3,
}


class ResourceType(str, Enum):
    """Types of entities an audit event can refer to."""

    USER = "USER"
    LAND = "LAND"
    LISTING = "LISTING"
    TRANSACTION = "TRANSACTION"
    SESSION = "SESSION"
    SYSTEM = "SYSTEM"
    FILE = "FILE"
    API = "API"


@dataclass(frozen=True)
class ActorRef:
    """The authenticated user who caused an event."""

    user_id: str
    email: str | None = None
    role: str | None = None


@dataclass(frozen=True)
class ResourceRef:
    """The entity affected by an event."""

    type: ResourceType
    id: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class RequestContext:
    """Inbound request details captured with an event."""

    method: str | None = None
    endpoint: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class ChangeSet:
    """Before/after snapshots plus the derived diff lines and JSON Patch."""

    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    changes: tuple[str, ...] = ()
    patch: list[dict[str, Any]] | None = None


@dataclass(frozen=True)
class RequestMetrics:
    """Timing and payload size of the audited request."""

    duration_ms: float | None = None
    request_bytes: int | None = None
    response_bytes: int | None = None


@dataclass(frozen=True)
class AuditEvent:
    """One write-once audit entry.

    Attributes:
        event_id: Unique identifier assigned at creation
        timestamp: UTC creation time
        action: What happened
        status: Outcome of the operation
        priority: Severity, drives immediate vs batched persistence
        actor: Who did it (None for system-originated events)
        session_id: Session the request belonged to
        resource: What it was done to
        request: Method/endpoint/client details
        change_set: Snapshots and diff for mutations
        status_code: HTTP status returned to the client
        error_message: Error text for failures
        error_stack: Formatted traceback for failures
        metrics: Duration and payload sizes
        metadata: Free-form JSON-safe details
        tags: Derived tag set, fixed at creation
    """

    event_id: UUID
    timestamp: datetime
    action: AuditAction
    status: AuditStatus
    priority: AuditPriority = AuditPriority.MEDIUM
    actor: ActorRef | None = None
    session_id: str | None = None
    resource: ResourceRef | None = None
    request: RequestContext | None = None
    change_set: ChangeSet | None = None
    status_code: int | None = None
    error_message: str | None = None
    error_stack: str | None = None
    metrics: RequestMetrics | None = None
    metadata: dict[str, Any] | None = None
    tags: tuple[str, ...] = field(default=())
