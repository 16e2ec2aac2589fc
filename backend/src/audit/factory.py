"""Audit event factory and request-scoped builders.

This module provides the single constructor for AuditEvent plus builders
that apply the fixed outcome/priority policy of each event family:

Functions:
    create_audit_event: Factory stamping id, timestamp, change set and tags
    auth_event: Sign-in/sign-up/sign-out and password events
    resource_event: CRUD mutations on users, land, listings, transactions
    file_event: Upload/download/delete of files
    system_event: Lifecycle events with no actor
    error_event: Unhandled errors (always written immediately)
    security_event: Suspicious activity, always tagged SECURITY
    api_request_event: One record per observed API request
    session_event: Session create/destroy/expire

Classes:
    RequestDescriptor: Framework-neutral view of an inbound request
    ResponseDescriptor: Framework-neutral view of the finalized response

Example:
    >>> request = RequestDescriptor(method="POST", path="/api/lands", client_host="10.0.0.5")
    >>> event = resource_event(
    ...     AuditAction.LAND_CREATE,
    ...     ResourceType.LAND,
    ...     user={"id": "u1", "email": "a@b.c", "role": "admin"},
    ...     resource={"id": "land-9", "title": "North plot"},
    ...     request=request,
    ...     new_data={"title": "North plot"},
    ... )
"""

from __future__ import annotations

import traceback
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from src.audit.config import derive_tags
from src.audit.diff import build_change_set, sanitize_headers, to_json_safe
from src.audit.models import (
    ActorRef,
    AuditAction,
    AuditEvent,
    AuditPriority,
    AuditStatus,
    RequestContext,
    RequestMetrics,
    ResourceRef,
    ResourceType,
)


@dataclass(frozen=True)
class RequestDescriptor:
    """What the audit core needs to know about an inbound request.

    Attributes:
        method: HTTP method, or "SYSTEM" for internal work
        path: Path including the query string
        client_host: Direct peer address, if known
        headers: Request headers with lower-cased names
        query_params: Parsed query string
        path_params: Matched route parameters
        session_id: Server-side session id, if any
        user: Authenticated user payload (mapping or object with id/email/role)
    """

    method: str | None = None
    path: str | None = None
    client_host: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    query_params: Mapping[str, Any] = field(default_factory=dict)
    path_params: Mapping[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    user: Any = None

    @property
    def user_agent(self) -> str | None:
        return self.headers.get("user-agent")

    @property
    def content_length(self) -> int | None:
        return _to_int(self.headers.get("content-length"))


@dataclass(frozen=True)
class ResponseDescriptor:
    """What the audit core needs to know about a finalized response.

    Attributes:
        status_code: HTTP status sent to the client
        headers: Response headers with lower-cased names
        payload: Parsed JSON body, when captured
    """

    status_code: int
    headers: Mapping[str, str] = field(default_factory=dict)
    payload: Any = None

    @property
    def content_length(self) -> int | None:
        return _to_int(self.headers.get("content-length"))


def _to_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _field(obj: Any, *names: str) -> Any:
    """Read the first present attribute/key among names from obj."""
    if obj is None:
        return None
    for name in names:
        value = obj.get(name) if isinstance(obj, Mapping) else getattr(obj, name, None)
        if value is not None:
            return value
    return None


def actor_from_user(user: Any) -> ActorRef | None:
    """Build an ActorRef from a user payload, or None if there is no user id."""
    user_id = _field(user, "id", "_id", "user_id")
    if user_id is None:
        return None
    return ActorRef(
        user_id=str(user_id),
        email=_field(user, "email"),
        role=_field(user, "role"),
    )


def client_ip(request: RequestDescriptor | None) -> str:
    """Resolve the client IP address of a request.

    Order: direct peer address, first X-Forwarded-For entry, X-Real-IP.

    Returns:
        The address, or "unknown".
    """
    if request is None:
        return "unknown"
    if request.client_host:
        return request.client_host
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip
    return "unknown"


def _request_context(request: RequestDescriptor | None) -> RequestContext | None:
    if request is None:
        return None
    return RequestContext(
        method=request.method,
        endpoint=request.path,
        ip_address=client_ip(request),
        user_agent=request.user_agent,
    )


def _format_error(error: BaseException | None) -> tuple[str | None, str | None]:
    if error is None:
        return (None, None)
    stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return (str(error) or type(error).__name__, stack)


def create_audit_event(
    *,
    action: AuditAction,
    status: AuditStatus,
    priority: AuditPriority = AuditPriority.MEDIUM,
    actor: ActorRef | None = None,
    session_id: str | None = None,
    resource: ResourceRef | None = None,
    request: RequestContext | None = None,
    old_data: Any = None,
    new_data: Any = None,
    status_code: int | None = None,
    error_message: str | None = None,
    error_stack: str | None = None,
    metrics: RequestMetrics | None = None,
    metadata: Mapping[str, Any] | None = None,
    tags: Iterable[str] = (),
    timestamp: datetime | None = None,
) -> AuditEvent:
    """Create an AuditEvent with generated id, timestamp and derived tags.

    Args:
        action: What happened.
        status: Outcome of the operation.
        priority: Severity (default MEDIUM).
        actor: Who did it (None for system events).
        session_id: Session identifier.
        resource: Affected entity.
        request: Request method/endpoint/client details.
        old_data: Snapshot before a mutation.
        new_data: Snapshot after a mutation.
        status_code: HTTP status code.
        error_message: Error text.
        error_stack: Formatted traceback.
        metrics: Duration and payload sizes.
        metadata: Free-form details, converted to JSON-safe values.
        tags: Extra tags merged ahead of the derived ones.
        timestamp: Creation time override (defaults to now, UTC).

    Returns:
        A new immutable AuditEvent.
    """
    return AuditEvent(
        event_id=uuid4(),
        timestamp=timestamp or datetime.now(tz=timezone.utc),
        action=action,
        status=status,
        priority=priority,
        actor=actor,
        session_id=session_id,
        resource=resource,
        request=request,
        change_set=build_change_set(old_data, new_data),
        status_code=status_code,
        error_message=error_message,
        error_stack=error_stack,
        metrics=metrics,
        metadata=to_json_safe(metadata) if metadata is not None else None,
        tags=derive_tags(action, status, priority, tags),
    )


def auth_event(
    action: AuditAction,
    user: Any,
    request: RequestDescriptor | None,
    status: AuditStatus = AuditStatus.SUCCESS,
    error: BaseException | None = None,
    status_code: int | None = None,
) -> AuditEvent:
    """Authentication event; failures are raised to HIGH priority."""
    message, stack = _format_error(error)
    return create_audit_event(
        action=action,
        status=status,
        priority=AuditPriority.MEDIUM if status == AuditStatus.SUCCESS else AuditPriority.HIGH,
        actor=actor_from_user(user),
        session_id=request.session_id if request else None,
        resource=ResourceRef(type=ResourceType.USER, id=_str_or_none(_field(user, "id", "_id"))),
        request=_request_context(request),
        status_code=status_code,
        error_message=message,
        error_stack=stack,
        metadata={
            "userAgent": request.user_agent if request else None,
            "referer": request.headers.get("referer") if request else None,
        },
    )


_RESOURCE_NAME_FIELDS: dict[ResourceType, tuple[str, ...]] = {
    ResourceType.USER: ("email", "id", "_id"),
    ResourceType.LAND: ("title", "id", "_id"),
    ResourceType.LISTING: ("title", "id", "_id"),
    ResourceType.TRANSACTION: ("transactionId", "transaction_id", "id", "_id"),
}


def _str_or_none(value: Any) -> str | None:
    return None if value is None else str(value)


def resource_event(
    action: AuditAction,
    resource_type: ResourceType,
    user: Any,
    resource: Any,
    request: RequestDescriptor | None,
    old_data: Any = None,
    new_data: Any = None,
    status: AuditStatus = AuditStatus.SUCCESS,
    status_code: int | None = None,
) -> AuditEvent:
    """CRUD mutation on a domain record; transactions are HIGH priority."""
    name_fields = _RESOURCE_NAME_FIELDS.get(resource_type, ("name", "id", "_id"))
    return create_audit_event(
        action=action,
        status=status,
        priority=(
            AuditPriority.HIGH
            if resource_type == ResourceType.TRANSACTION
            else AuditPriority.MEDIUM
        ),
        actor=actor_from_user(user),
        session_id=request.session_id if request else None,
        resource=ResourceRef(
            type=resource_type,
            id=_str_or_none(_field(resource, "id", "_id")),
            name=_str_or_none(_field(resource, *name_fields)),
        ),
        request=_request_context(request),
        old_data=old_data,
        new_data=new_data,
        status_code=status_code,
    )


def file_event(
    action: AuditAction,
    user: Any,
    file: Any,
    request: RequestDescriptor | None,
    status: AuditStatus = AuditStatus.SUCCESS,
    error: BaseException | None = None,
    status_code: int | None = None,
) -> AuditEvent:
    """File operation event with the file's size and type in metadata."""
    message, stack = _format_error(error)
    size = _to_int(_field(file, "size"))
    return create_audit_event(
        action=action,
        status=status,
        actor=actor_from_user(user),
        session_id=request.session_id if request else None,
        resource=ResourceRef(
            type=ResourceType.FILE,
            id=_str_or_none(_field(file, "id", "_id")),
            name=_str_or_none(_field(file, "filename", "originalname")),
        ),
        request=_request_context(request),
        status_code=status_code,
        error_message=message,
        error_stack=stack,
        metrics=RequestMetrics(request_bytes=size) if size is not None else None,
        metadata={
            "fileSize": size,
            "mimeType": _field(file, "mimetype", "content_type"),
            "uploadPath": _field(file, "path"),
        },
    )


def system_event(
    action: AuditAction,
    details: Mapping[str, Any] | None = None,
    priority: AuditPriority = AuditPriority.MEDIUM,
    status: AuditStatus = AuditStatus.SUCCESS,
) -> AuditEvent:
    """System lifecycle event, no actor and method SYSTEM."""
    return create_audit_event(
        action=action,
        status=status,
        priority=priority,
        resource=ResourceRef(type=ResourceType.SYSTEM),
        request=RequestContext(method="SYSTEM"),
        metadata=details or {},
    )


def error_event(
    action: AuditAction,
    user: Any,
    request: RequestDescriptor | None,
    error: BaseException,
    priority: AuditPriority = AuditPriority.HIGH,
    status_code: int | None = None,
) -> AuditEvent:
    """Error event; ERROR outcome means it is always written immediately."""
    message, stack = _format_error(error)
    return create_audit_event(
        action=action,
        status=AuditStatus.ERROR,
        priority=priority,
        actor=actor_from_user(user),
        session_id=request.session_id if request else None,
        resource=ResourceRef(type=ResourceType.SYSTEM),
        request=_request_context(request),
        status_code=status_code,
        error_message=message,
        error_stack=stack,
        metadata={
            "errorName": type(error).__name__,
            "errorCode": getattr(error, "code", None),
        },
    )


def security_event(
    action: AuditAction,
    user: Any,
    request: RequestDescriptor | None,
    details: Mapping[str, Any] | None = None,
    priority: AuditPriority = AuditPriority.HIGH,
    status_code: int | None = None,
) -> AuditEvent:
    """Security event with WARNING outcome and an explicit SECURITY tag."""
    return create_audit_event(
        action=action,
        status=AuditStatus.WARNING,
        priority=priority,
        actor=actor_from_user(user),
        session_id=request.session_id if request else None,
        resource=ResourceRef(type=ResourceType.SYSTEM),
        request=_request_context(request),
        status_code=status_code,
        metadata=details or {},
        tags=("SECURITY",),
    )


def api_request_event(
    request: RequestDescriptor,
    response: ResponseDescriptor,
    duration_ms: float,
    status: AuditStatus | None = None,
) -> AuditEvent:
    """LOW priority record of one API request/response pair.

    The outcome defaults to FAILURE for 4xx/5xx responses and SUCCESS otherwise.
    """
    if status is None:
        status = AuditStatus.FAILURE if response.status_code >= 400 else AuditStatus.SUCCESS
    return create_audit_event(
        action=AuditAction.API_REQUEST,
        status=status,
        priority=AuditPriority.LOW,
        actor=actor_from_user(request.user),
        session_id=request.session_id,
        resource=ResourceRef(type=ResourceType.API),
        request=_request_context(request),
        status_code=response.status_code,
        metrics=RequestMetrics(
            duration_ms=round(duration_ms, 2),
            request_bytes=request.content_length,
            response_bytes=response.content_length,
        ),
        metadata={
            "query": dict(request.query_params),
            "params": dict(request.path_params),
            "headers": sanitize_headers(request.headers),
        },
    )


def session_event(
    action: AuditAction,
    user: Any,
    request: RequestDescriptor | None = None,
    session_id: str | None = None,
    details: Mapping[str, Any] | None = None,
    status: AuditStatus = AuditStatus.SUCCESS,
    priority: AuditPriority = AuditPriority.MEDIUM,
) -> AuditEvent:
    """Session lifecycle event."""
    return create_audit_event(
        action=action,
        status=status,
        priority=priority,
        actor=actor_from_user(user),
        session_id=session_id or (request.session_id if request else None),
        resource=ResourceRef(type=ResourceType.SESSION, id=session_id),
        request=_request_context(request),
        metadata=details or {},
    )
