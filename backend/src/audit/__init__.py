"""Audit logging module for the land registry backend.

This module provides the audit core:
- Immutable audit events with deterministic tag derivation
- Immediate writes for CRITICAL/ERROR events, batched writes for the rest
- Sensitive data redaction and size-limited change snapshots
- JSON Patch diff computation for change tracking
- Filtered queries, summaries, time-bucketed statistics and CSV export

Usage:
    from src.audit import (
        init_audit_service,
        get_audit_service,
        AuditAction,
        AuditPriority,
        system_event,
        resource_event,
    )

    # Initialize during startup
    service = init_audit_service(settings, async_session)

    # Record an event (never raises)
    await service.submit(system_event(AuditAction.SYSTEM_STARTUP, {"version": "1.0.0"}))

    # Flush buffered events at shutdown
    await service.drain()
"""

# Config - write-path rules and tagging
from src.audit.config import (
    ACTION_CATEGORIES,
    SECURITY_ACTIONS,
    derive_tags,
    get_action_category,
    is_immediate_write,
    parse_min_priority,
)

# Diff - change sets and redaction
from src.audit.diff import (
    build_change_set,
    compute_changes,
    compute_diff_jsonpatch,
    enforce_size_limit,
    redact_sensitive_fields,
)

# Errors
from src.audit.errors import (
    AuditConfigError,
    AuditError,
    AuditLogNotFoundError,
    AuditStoreError,
    InvalidAuditQueryError,
)

# Factory - event creation and builders
from src.audit.factory import (
    RequestDescriptor,
    ResponseDescriptor,
    api_request_event,
    auth_event,
    create_audit_event,
    error_event,
    file_event,
    resource_event,
    security_event,
    session_event,
    system_event,
)

# Models - core data structures and enums
from src.audit.models import (
    AuditAction,
    AuditEvent,
    AuditPriority,
    AuditStatus,
    ResourceType,
)

# Query - read side
from src.audit.query import AuditQueryService, Granularity

# Repository - database operations
from src.audit.repository import (
    AuditQueryFilters,
    AuditRepository,
    SqlAuditStore,
)

# Service - batching engine
from src.audit.service import AuditService

# Setup - initialization
from src.audit.setup import (
    get_audit_service,
    init_audit_service,
    shutdown_audit_service,
)

__all__ = [
    # Models
    "AuditAction",
    "AuditStatus",
    "AuditPriority",
    "ResourceType",
    "AuditEvent",
    # Config
    "ACTION_CATEGORIES",
    "SECURITY_ACTIONS",
    "derive_tags",
    "get_action_category",
    "is_immediate_write",
    "parse_min_priority",
    # Errors
    "AuditError",
    "InvalidAuditQueryError",
    "AuditLogNotFoundError",
    "AuditStoreError",
    "AuditConfigError",
    # Diff
    "build_change_set",
    "compute_changes",
    "compute_diff_jsonpatch",
    "redact_sensitive_fields",
    "enforce_size_limit",
    # Repository
    "AuditRepository",
    "AuditQueryFilters",
    "SqlAuditStore",
    # Query
    "AuditQueryService",
    "Granularity",
    # Service
    "AuditService",
    # Factory
    "RequestDescriptor",
    "ResponseDescriptor",
    "create_audit_event",
    "auth_event",
    "resource_event",
    "file_event",
    "system_event",
    "error_event",
    "security_event",
    "api_request_event",
    "session_event",
    # Setup
    "init_audit_service",
    "get_audit_service",
    "shutdown_audit_service",
]
