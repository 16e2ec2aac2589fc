"""Audit write-path rules, tag derivation and redaction configuration.

This module defines the static configuration of the audit core:
- Which events bypass the batch and are written immediately
- Action categories and the security-action allowlist used for tagging
- Redaction rules for snapshots and request headers
- Size limits for stored snapshots

Immediate write: CRITICAL priority or ERROR outcome. These events are
                 persisted with a single-record insert before submit returns.

Batched write:   everything else. Events are queued in memory and flushed
                 by size or by timer.
"""

from collections.abc import Iterable

from src.audit.errors import AuditConfigError
from src.audit.models import AuditAction, AuditPriority, AuditStatus

# =============================================================================
# ACTION CATEGORIES
# =============================================================================

ACTION_CATEGORIES: dict[AuditAction, str] = {
    # Authentication
    AuditAction.USER_SIGNUP: "AUTHENTICATION",
    AuditAction.USER_SIGNIN: "AUTHENTICATION",
    AuditAction.USER_SIGNOUT: "AUTHENTICATION",
    AuditAction.PASSWORD_CHANGE: "AUTHENTICATION",
    AuditAction.PASSWORD_RESET: "AUTHENTICATION",
    # Session
    AuditAction.SESSION_CREATE: "SESSION",
    AuditAction.SESSION_DESTROY: "SESSION",
    AuditAction.SESSION_EXPIRE: "SESSION",
    # User management
    AuditAction.USER_CREATE: "USER_MANAGEMENT",
    AuditAction.USER_UPDATE: "USER_MANAGEMENT",
    AuditAction.USER_DELETE: "USER_MANAGEMENT",
    AuditAction.USER_PROFILE_UPDATE: "USER_MANAGEMENT",
    # Land management
    AuditAction.LAND_CREATE: "LAND_MANAGEMENT",
    AuditAction.LAND_UPDATE: "LAND_MANAGEMENT",
    AuditAction.LAND_DELETE: "LAND_MANAGEMENT",
    AuditAction.LAND_VIEW: "LAND_MANAGEMENT",
    # Listings
    AuditAction.LISTING_CREATE: "LISTING_MANAGEMENT",
    AuditAction.LISTING_UPDATE: "LISTING_MANAGEMENT",
    AuditAction.LISTING_DELETE: "LISTING_MANAGEMENT",
    AuditAction.LISTING_VIEW: "LISTING_MANAGEMENT",
    AuditAction.LISTING_APPROVE: "LISTING_MANAGEMENT",
    AuditAction.LISTING_REJECT: "LISTING_MANAGEMENT",
    # Transactions
    AuditAction.TRANSACTION_CREATE: "TRANSACTION_MANAGEMENT",
    AuditAction.TRANSACTION_UPDATE: "TRANSACTION_MANAGEMENT",
    AuditAction.TRANSACTION_DELETE: "TRANSACTION_MANAGEMENT",
    AuditAction.TRANSACTION_APPROVE: "TRANSACTION_MANAGEMENT",
    AuditAction.TRANSACTION_REJECT: "TRANSACTION_MANAGEMENT",
    AuditAction.TRANSACTION_COMPLETE: "TRANSACTION_MANAGEMENT",
    # System
    AuditAction.SYSTEM_STARTUP: "SYSTEM",
    AuditAction.SYSTEM_SHUTDOWN: "SYSTEM",
    AuditAction.SYSTEM_ERROR: "SYSTEM",
    AuditAction.SYSTEM_WARNING: "SYSTEM",
    AuditAction.SESSION_CLEANUP: "SYSTEM",
    AuditAction.DATABASE_BACKUP: "SYSTEM",
    AuditAction.DATABASE_RESTORE: "SYSTEM",
    # Admin
    AuditAction.ADMIN_LOGIN: "ADMIN",
    AuditAction.ADMIN_ACTION: "ADMIN",
    AuditAction.USER_FORCE_LOGOUT: "ADMIN",
    AuditAction.SYSTEM_MAINTENANCE: "ADMIN",
    # Files
    AuditAction.FILE_UPLOAD: "FILE_OPERATIONS",
    AuditAction.FILE_DELETE: "FILE_OPERATIONS",
    AuditAction.FILE_DOWNLOAD: "FILE_OPERATIONS",
    AuditAction.FILE_VIEW: "FILE_OPERATIONS",
    # API
    AuditAction.API_REQUEST: "API",
    AuditAction.API_RESPONSE: "API",
    AuditAction.API_ERROR: "API",
    # Security
    AuditAction.LOGIN_ATTEMPT: "SECURITY",
    AuditAction.LOGIN_FAILED: "SECURITY",
    AuditAction.UNAUTHORIZED_ACCESS: "SECURITY",
    AuditAction.RATE_LIMIT_EXCEEDED: "SECURITY",
    AuditAction.SUSPICIOUS_ACTIVITY: "SECURITY",
    AuditAction.ACCOUNT_LOCKED: "SECURITY",
    AuditAction.ACCOUNT_UNLOCKED: "SECURITY",
}
"""Mapping of actions to their reporting category.

The category is the first derived tag of every event. Actions missing
from this mapping fall back to "OTHER".
"""

SECURITY_ACTIONS: frozenset[AuditAction] = frozenset(
    {
        AuditAction.LOGIN_ATTEMPT,
        AuditAction.LOGIN_FAILED,
        AuditAction.UNAUTHORIZED_ACCESS,
        AuditAction.SUSPICIOUS_ACTIVITY,
    }
)
"""Actions that always carry the SECURITY tag."""

ERROR_STATUSES: frozenset[AuditStatus] = frozenset({AuditStatus.ERROR, AuditStatus.FAILURE})
"""Outcomes that carry the ERROR tag and count as errors in statistics."""

SECURITY_TAG = "SECURITY"
ERROR_TAG = "ERROR"


# =============================================================================
# REDACTION RULES
# =============================================================================

SENSITIVE_FIELDS: frozenset[str] = frozenset(
    {
        "password",
        "password_confirm",
        "passwordConfirm",
        "current_password",
        "new_password",
        "token",
        "reset_token",
        "secret",
        "api_key",
        "api_secret",
    }
)
"""Snapshot keys whose values are masked before storage."""

SENSITIVE_HEADERS: frozenset[str] = frozenset({"authorization", "cookie", "x-api-key"})
"""Request headers replaced by REDACTED_MARKER in API request metadata."""

REDACTED_MARKER = "[REDACTED]"


# =============================================================================
# SIZE LIMITS
# =============================================================================

MAX_SNAPSHOT_SIZE_BYTES: int = 32768
"""Maximum serialized size of a before/after snapshot (32 KB)."""


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================


def get_action_category(action: AuditAction) -> str:
    """Get the reporting category for an action.

    Args:
        action: The audit action to classify.

    Returns:
        The category name, or "OTHER" if the action is unmapped.
    """
    return ACTION_CATEGORIES.get(action, "OTHER")


def derive_tags(
    action: AuditAction,
    status: AuditStatus,
    priority: AuditPriority,
    extra: Iterable[str] = (),
) -> tuple[str, ...]:
    """Derive the tag set of an event.

    Caller-supplied tags come first, followed by category, status and
    priority, then SECURITY for allowlisted actions and ERROR for failed
    outcomes. Duplicates are removed keeping first occurrence, so the
    result is deterministic and applying it twice changes nothing.

    Args:
        action: The audit action.
        status: The event outcome.
        priority: The event priority.
        extra: Additional tags requested by the caller.

    Returns:
        Ordered tuple of unique tag strings.
    """
    tags = list(extra)
    tags.append(get_action_category(action))
    tags.append(status.value)
    tags.append(priority.value)
    if action in SECURITY_ACTIONS:
        tags.append(SECURITY_TAG)
    if status in ERROR_STATUSES:
        tags.append(ERROR_TAG)
    return tuple(dict.fromkeys(tags))


def is_immediate_write(priority: AuditPriority, status: AuditStatus) -> bool:
    """Check if an event must bypass the batch.

    Args:
        priority: The event priority.
        status: The event outcome.

    Returns:
        True for CRITICAL priority or ERROR outcome, False otherwise.
    """
    return priority == AuditPriority.CRITICAL or status == AuditStatus.ERROR


def parse_min_priority(level: str) -> AuditPriority:
    """Parse the configured minimum log level.

    Args:
        level: Priority name, case-insensitive (LOW, MEDIUM, HIGH, CRITICAL).

    Returns:
        The matching AuditPriority.

    Raises:
        AuditConfigError: If the level is not a known priority.
    """
    try:
        return AuditPriority(level.strip().upper())
    except ValueError as e:
        raise AuditConfigError(f"Unknown audit log level: {level!r}") from e
