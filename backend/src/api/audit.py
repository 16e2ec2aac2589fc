# backend/src/api/audit.py
"""Audit API endpoints for reviewing, exporting and purging audit logs.

Every route requires an admin session.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.deps import require_admin
from src.audit.errors import (
    AuditError,
    AuditLogNotFoundError,
    AuditStoreError,
    InvalidAuditQueryError,
)
from src.audit.models import AuditAction, AuditPriority, AuditStatus, ResourceType
from src.audit.query import (
    DEFAULT_PAGE_SIZE,
    DEFAULT_RETENTION_DAYS,
    MAX_PAGE_SIZE,
    AuditPage,
    AuditQueryService,
    ExportFormat,
    Granularity,
)
from src.audit.repository import AuditQueryFilters, to_utc
from src.db.database import get_session
from src.models.audit_log import AuditLogRecord


# Response schemas
class AuditLogResponse(BaseModel):
    """Response model for a single audit log."""

    id: str
    timestamp: datetime
    action: str
    status: str
    priority: str
    user_id: str | None
    user_email: str | None
    user_role: str | None
    session_id: str | None
    resource_type: str | None
    resource_id: str | None
    resource_name: str | None
    method: str | None
    endpoint: str | None
    ip_address: str | None
    user_agent: str | None
    old_data: dict | None
    new_data: dict | None
    changes: list[str] | None
    patch: list[dict] | None
    status_code: int | None
    error_message: str | None
    error_stack: str | None
    duration_ms: float | None
    request_bytes: int | None
    response_bytes: int | None
    metadata: dict | None
    tags: list[str]


class AuditLogListResponse(BaseModel):
    """Response model for paginated audit log list."""

    logs: list[AuditLogResponse]
    total: int
    page: int
    limit: int
    pages: int


class StatusPriorityCountResponse(BaseModel):
    status: str
    priority: str
    count: int


class ActionSummaryResponse(BaseModel):
    action: str
    total_count: int
    statuses: list[StatusPriorityCountResponse]


class AuditStatisticsResponse(BaseModel):
    total_logs: int
    today_logs: int
    error_logs: int
    security_logs: int


class AuditSummaryResponse(BaseModel):
    """Response model for the per-action summary and global counters."""

    summary: list[ActionSummaryResponse]
    total_count: int
    statistics: AuditStatisticsResponse


class ActivityBucketResponse(BaseModel):
    key: str
    count: int
    errors: int
    security: int
    actions: list[str]


class DateRangeStatsResponse(BaseModel):
    """Response model for time-bucketed statistics."""

    granularity: str
    start_date: datetime
    end_date: datetime
    results: list[ActivityBucketResponse]


class AuditExportResponse(BaseModel):
    logs: list[AuditLogResponse]
    count: int


class CleanupResponse(BaseModel):
    deleted_count: int
    message: str


# Router
router = APIRouter(
    prefix="/api/audit",
    tags=["audit"],
    dependencies=[Depends(require_admin)],
)


def _record_to_response(record: AuditLogRecord) -> AuditLogResponse:
    return AuditLogResponse(
        id=str(record.id),
        timestamp=to_utc(record.timestamp),
        action=record.action,
        status=record.status,
        priority=record.priority,
        user_id=record.user_id,
        user_email=record.user_email,
        user_role=record.user_role,
        session_id=record.session_id,
        resource_type=record.resource_type,
        resource_id=record.resource_id,
        resource_name=record.resource_name,
        method=record.method,
        endpoint=record.endpoint,
        ip_address=record.ip_address,
        user_agent=record.user_agent,
        old_data=record.old_data,
        new_data=record.new_data,
        changes=record.changes,
        patch=record.patch,
        status_code=record.status_code,
        error_message=record.error_message,
        error_stack=record.error_stack,
        duration_ms=record.duration_ms,
        request_bytes=record.request_bytes,
        response_bytes=record.response_bytes,
        metadata=record.details,
        tags=record.tags,
    )


def _page_to_response(page: AuditPage) -> AuditLogListResponse:
    return AuditLogListResponse(
        logs=[_record_to_response(r) for r in page.items],
        total=page.total,
        page=page.page,
        limit=page.page_size,
        pages=page.pages,
    )


def _http_error(error: Exception) -> HTTPException:
    """Map audit and store errors onto HTTP status codes."""
    if isinstance(error, InvalidAuditQueryError):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, AuditLogNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (AuditStoreError, SQLAlchemyError)):
        return HTTPException(status_code=503, detail="Audit store unavailable")
    return HTTPException(status_code=500, detail=str(error))


def _split_tags(tags: str | None) -> tuple[str, ...] | None:
    if not tags:
        return None
    parsed = tuple(t.strip() for t in tags.split(",") if t.strip())
    return parsed or None


def _filters(
    action: AuditAction | None = Query(default=None),
    status: AuditStatus | None = Query(default=None),
    priority: AuditPriority | None = Query(default=None),
    resource_type: ResourceType | None = Query(default=None),
    user_id: str | None = Query(default=None),
    ip_address: str | None = Query(default=None),
    tags: str | None = Query(default=None, description="Comma-separated; any match"),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
) -> AuditQueryFilters:
    return AuditQueryFilters(
        action=action,
        status=status,
        priority=priority,
        resource_type=resource_type,
        user_id=user_id,
        ip_address=ip_address,
        tags=_split_tags(tags),
        start_date=start_date,
        end_date=end_date,
    )


@router.get("", response_model=AuditLogListResponse)
async def list_audit_logs(
    filters: AuditQueryFilters = Depends(_filters),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    db: AsyncSession = Depends(get_session),
) -> AuditLogListResponse:
    """List audit logs with optional filtering and pagination.

    Args:
        filters: Conjunction of action/status/priority/resource/user/IP/tag/date filters
        page: 1-indexed page number
        limit: Records per page (default 50)
        db: Database session

    Returns:
        Page of audit logs, newest first, with total and page count
    """
    try:
        result = await AuditQueryService(db).list_events(filters, page, limit)
    except (AuditError, SQLAlchemyError) as e:
        raise _http_error(e) from e
    return _page_to_response(result)


@router.get("/summary", response_model=AuditSummaryResponse)
async def get_audit_summary(
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    db: AsyncSession = Depends(get_session),
) -> AuditSummaryResponse:
    """Get per-action counts by status and priority, plus global statistics."""
    try:
        summary = await AuditQueryService(db).summary(start_date, end_date)
    except (AuditError, SQLAlchemyError) as e:
        raise _http_error(e) from e

    return AuditSummaryResponse(
        summary=[
            ActionSummaryResponse(
                action=item.action,
                total_count=item.total_count,
                statuses=[
                    StatusPriorityCountResponse(status=s.status, priority=s.priority, count=s.count)
                    for s in item.statuses
                ],
            )
            for item in summary.actions
        ],
        total_count=summary.total_count,
        statistics=AuditStatisticsResponse(
            total_logs=summary.statistics.total_logs,
            today_logs=summary.statistics.today_logs,
            error_logs=summary.statistics.error_logs,
            security_logs=summary.statistics.security_logs,
        ),
    )


@router.get("/stats/date-range", response_model=DateRangeStatsResponse)
async def get_audit_stats_by_date_range(
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    group_by: str = Query(default="day", description="hour, day or month"),
    db: AsyncSession = Depends(get_session),
) -> DateRangeStatsResponse:
    """Get audit activity grouped into hour, day or month buckets.

    Raises:
        HTTPException: 400 if a date is missing or group_by is unknown
    """
    try:
        buckets = await AuditQueryService(db).by_date_range(start_date, end_date, group_by)
    except (AuditError, SQLAlchemyError) as e:
        raise _http_error(e) from e

    return DateRangeStatsResponse(
        granularity=Granularity(group_by).value,
        start_date=start_date,
        end_date=end_date,
        results=[
            ActivityBucketResponse(
                key=b.key,
                count=b.count,
                errors=b.errors,
                security=b.security,
                actions=b.actions,
            )
            for b in buckets
        ],
    )


@router.get("/export", response_model=None)
async def export_audit_logs(
    filters: AuditQueryFilters = Depends(_filters),
    format: ExportFormat = Query(default=ExportFormat.CSV),
    db: AsyncSession = Depends(get_session),
) -> Any:
    """Export every matching audit log as CSV (default) or JSON."""
    try:
        export = await AuditQueryService(db).export(filters, format)
    except (AuditError, SQLAlchemyError) as e:
        raise _http_error(e) from e

    if export.content is not None:
        filename = f"audit-logs-{datetime.now(timezone.utc).date().isoformat()}.csv"
        return Response(
            content=export.content,
            media_type="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )
    return AuditExportResponse(
        logs=[_record_to_response(r) for r in export.records],
        count=export.count,
    )


@router.get("/user/{target_user_id}", response_model=AuditLogListResponse)
async def get_user_audit_logs(
    target_user_id: str,
    filters: AuditQueryFilters = Depends(_filters),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    db: AsyncSession = Depends(get_session),
) -> AuditLogListResponse:
    """List audit logs of one user."""
    try:
        result = await AuditQueryService(db).user_logs(target_user_id, filters, page, limit)
    except (AuditError, SQLAlchemyError) as e:
        raise _http_error(e) from e
    return _page_to_response(result)


@router.get("/system", response_model=AuditLogListResponse)
async def get_system_audit_logs(
    filters: AuditQueryFilters = Depends(_filters),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    db: AsyncSession = Depends(get_session),
) -> AuditLogListResponse:
    """List system lifecycle audit logs."""
    try:
        result = await AuditQueryService(db).system_logs(filters, page, limit)
    except (AuditError, SQLAlchemyError) as e:
        raise _http_error(e) from e
    return _page_to_response(result)


@router.get("/security", response_model=AuditLogListResponse)
async def get_security_audit_logs(
    filters: AuditQueryFilters = Depends(_filters),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    db: AsyncSession = Depends(get_session),
) -> AuditLogListResponse:
    """List SECURITY-tagged audit logs."""
    try:
        result = await AuditQueryService(db).security_logs(filters, page, limit)
    except (AuditError, SQLAlchemyError) as e:
        raise _http_error(e) from e
    return _page_to_response(result)


@router.get("/errors", response_model=AuditLogListResponse)
async def get_error_audit_logs(
    filters: AuditQueryFilters = Depends(_filters),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    db: AsyncSession = Depends(get_session),
) -> AuditLogListResponse:
    """List audit logs with ERROR or FAILURE outcome."""
    try:
        result = await AuditQueryService(db).error_logs(filters, page, limit)
    except (AuditError, SQLAlchemyError) as e:
        raise _http_error(e) from e
    return _page_to_response(result)


@router.delete("/cleanup", response_model=CleanupResponse)
async def cleanup_audit_logs(
    days: int = Query(default=DEFAULT_RETENTION_DAYS, ge=0),
    db: AsyncSession = Depends(get_session),
) -> CleanupResponse:
    """Delete audit logs older than the retention period (irreversible)."""
    try:
        deleted = await AuditQueryService(db).cleanup(days)
    except (AuditError, SQLAlchemyError) as e:
        raise _http_error(e) from e
    return CleanupResponse(
        deleted_count=deleted,
        message=f"Deleted {deleted} audit logs older than {days} days",
    )


@router.get("/{event_id}", response_model=AuditLogResponse)
async def get_audit_log(
    event_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> AuditLogResponse:
    """Get a single audit log by UUID.

    Raises:
        HTTPException: 404 if the audit log does not exist
    """
    try:
        record = await AuditQueryService(db).get_event(event_id)
    except (AuditError, SQLAlchemyError) as e:
        raise _http_error(e) from e
    return _record_to_response(record)
