"""Audit repository for persisting and querying audit events.

This module provides the durable store adapter of the audit core:
- AuditRepository: per-session reads, writes and retention deletes
- SqlAuditStore: session-per-call writer used by the batching engine
- AuditQueryFilters: conjunction of optional filters shared by list and export

All timestamps are normalized to UTC before they reach the database.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import Select, String, case, delete, exists, func, literal_column, select
from sqlalchemy.exc import DataError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.audit.config import ERROR_STATUSES, SECURITY_TAG
from src.audit.errors import AuditStoreError
from src.audit.models import AuditAction, AuditEvent, AuditPriority, AuditStatus, ResourceType
from src.models.audit_log import AuditLogRecord, AuditLogTag

logger = logging.getLogger(__name__)


def to_utc(value: datetime) -> datetime:
    """Return value as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class AuditQueryFilters:
    """Filter parameters for querying audit logs.

    Every set field narrows the result (logical AND).

    Attributes:
        action: Filter by action
        status: Filter by outcome
        status_in: Filter by any of several outcomes
        priority: Filter by priority
        resource_type: Filter by resource type
        user_id: Filter by actor id
        ip_address: Filter by client IP address
        tags: Keep records carrying at least one of these tags
        start_date: Keep records at or after this time (inclusive)
        end_date: Keep records at or before this time (inclusive)
    """

    action: AuditAction | None = None
    status: AuditStatus | None = None
    status_in: tuple[AuditStatus, ...] | None = None
    priority: AuditPriority | None = None
    resource_type: ResourceType | None = None
    user_id: str | None = None
    ip_address: str | None = None
    tags: tuple[str, ...] | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None


def apply_filters(stmt: Select, filters: AuditQueryFilters) -> Select:
    """Add the WHERE clauses for filters to a select over audit_logs."""
    if filters.action is not None:
        stmt = stmt.where(AuditLogRecord.action == filters.action.value)
    if filters.status is not None:
        stmt = stmt.where(AuditLogRecord.status == filters.status.value)
    if filters.status_in:
        stmt = stmt.where(AuditLogRecord.status.in_([s.value for s in filters.status_in]))
    if filters.priority is not None:
        stmt = stmt.where(AuditLogRecord.priority == filters.priority.value)
    if filters.resource_type is not None:
        stmt = stmt.where(AuditLogRecord.resource_type == filters.resource_type.value)
    if filters.user_id is not None:
        stmt = stmt.where(AuditLogRecord.user_id == filters.user_id)
    if filters.ip_address is not None:
        stmt = stmt.where(AuditLogRecord.ip_address == filters.ip_address)
    if filters.tags:
        tagged = select(AuditLogTag.audit_log_id).where(AuditLogTag.tag.in_(filters.tags))
        stmt = stmt.where(AuditLogRecord.id.in_(tagged))
    if filters.start_date is not None:
        stmt = stmt.where(AuditLogRecord.timestamp >= to_utc(filters.start_date))
    if filters.end_date is not None:
        stmt = stmt.where(AuditLogRecord.timestamp <= to_utc(filters.end_date))
    return stmt


def _is_security():
    return (
        exists()
        .where(AuditLogTag.audit_log_id == AuditLogRecord.id)
        .where(AuditLogTag.tag == SECURITY_TAG)
    )


# Bucket key patterns per granularity, keyed by dialect. Patterns are inlined
# as literals so the grouped expression matches the selected one exactly.
_BUCKET_PATTERNS: dict[str, dict[str, str]] = {
    "postgresql": {"hour": "YYYY-MM-DD-HH24", "day": "YYYY-MM-DD", "month": "YYYY-MM"},
    "sqlite": {"hour": "%Y-%m-%d-%H", "day": "%Y-%m-%d", "month": "%Y-%m"},
}


def bucket_expression(dialect: str, granularity: str):
    """Build the SQL expression rendering a record's UTC timestamp as a bucket key."""
    patterns = _BUCKET_PATTERNS.get(dialect)
    if patterns is None:
        raise NotImplementedError(f"Date bucketing is not supported on {dialect}")
    pattern = literal_column(f"'{patterns[granularity]}'")
    if dialect == "postgresql":
        utc = func.timezone(literal_column("'UTC'"), AuditLogRecord.timestamp)
        return func.to_char(utc, pattern)
    return func.strftime(pattern, AuditLogRecord.timestamp)


def _bounded_columns(table) -> dict[str, int]:
    return {
        column.key: column.type.length
        for column in table.columns
        if isinstance(column.type, String) and column.type.length
    }


# Client-controlled strings (user agent, forwarded IP, titles) are clipped to
# the column width so one oversized value cannot fail a whole batch insert
_RECORD_LIMITS = _bounded_columns(AuditLogRecord.__table__)
_TAG_LIMIT = AuditLogTag.__table__.c.tag.type.length


def clip(value: str | None, limit: int | None) -> str | None:
    if value is None or limit is None or len(value) <= limit:
        return value
    return value[:limit]


def event_to_record(event: AuditEvent) -> AuditLogRecord:
    """Map an AuditEvent onto a new AuditLogRecord row."""
    actor = event.actor
    resource = event.resource
    request = event.request
    change_set = event.change_set
    metrics = event.metrics

    record = AuditLogRecord(
        id=event.event_id,
        timestamp=to_utc(event.timestamp),
        action=event.action.value,
        status=event.status.value,
        priority=event.priority.value,
        user_id=actor.user_id if actor else None,
        user_email=actor.email if actor else None,
        user_role=actor.role if actor else None,
        session_id=event.session_id,
        resource_type=resource.type.value if resource else None,
        resource_id=resource.id if resource else None,
        resource_name=resource.name if resource else None,
        method=request.method if request else None,
        endpoint=request.endpoint if request else None,
        ip_address=request.ip_address if request else None,
        user_agent=request.user_agent if request else None,
        old_data=change_set.before if change_set else None,
        new_data=change_set.after if change_set else None,
        changes=list(change_set.changes) if change_set else None,
        patch=change_set.patch if change_set else None,
        status_code=event.status_code,
        error_message=event.error_message,
        error_stack=event.error_stack,
        duration_ms=metrics.duration_ms if metrics else None,
        request_bytes=metrics.request_bytes if metrics else None,
        response_bytes=metrics.response_bytes if metrics else None,
        details=event.metadata,
    )
    for column, limit in _RECORD_LIMITS.items():
        value = getattr(record, column)
        if isinstance(value, str):
            setattr(record, column, clip(value, limit))
    record.tag_rows = [
        AuditLogTag(position=position, tag=clip(tag, _TAG_LIMIT))
        for position, tag in enumerate(event.tags)
    ]
    return record


class AuditRepository:
    """Repository for audit log database operations.

    Args:
        session: SQLAlchemy async session for database operations
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert_events(self, events: Sequence[AuditEvent]) -> int:
        """Insert events in one transaction.

        Args:
            events: Events to persist

        Returns:
            Number of rows inserted
        """
        if not events:
            return 0
        self._session.add_all([event_to_record(event) for event in events])
        await self._session.commit()
        return len(events)

    async def get_event(self, event_id: UUID) -> AuditLogRecord | None:
        """Fetch a single audit record by id.

        Args:
            event_id: The UUID of the record

        Returns:
            The record, or None if not found
        """
        result = await self._session.execute(
            select(AuditLogRecord).where(AuditLogRecord.id == event_id)
        )
        return result.scalar_one_or_none()

    async def query_events(
        self,
        filters: AuditQueryFilters,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[AuditLogRecord]:
        """Query records newest first.

        Ties on timestamp are broken by id so that pages never overlap.

        Args:
            filters: Filter parameters
            offset: Number of records to skip
            limit: Maximum number of records (None for all)

        Returns:
            Matching records ordered by timestamp descending
        """
        stmt = apply_filters(select(AuditLogRecord), filters).order_by(
            AuditLogRecord.timestamp.desc(), AuditLogRecord.id.desc()
        )
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_events(self, filters: AuditQueryFilters) -> int:
        """Count records matching filters."""
        stmt = apply_filters(select(func.count()).select_from(AuditLogRecord), filters)
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def count_grouped(self, filters: AuditQueryFilters) -> list[tuple[str, str, str, int]]:
        """Count records per (action, status, priority).

        Returns:
            List of (action, status, priority, count) tuples
        """
        stmt = apply_filters(
            select(
                AuditLogRecord.action,
                AuditLogRecord.status,
                AuditLogRecord.priority,
                func.count().label("count"),
            ),
            filters,
        ).group_by(AuditLogRecord.action, AuditLogRecord.status, AuditLogRecord.priority)
        result = await self._session.execute(stmt)
        return [(row[0], row[1], row[2], row[3]) for row in result.fetchall()]

    def _bucket(self, granularity: str):
        return bucket_expression(self._session.get_bind().dialect.name, granularity)

    async def count_by_bucket(
        self, filters: AuditQueryFilters, granularity: str
    ) -> list[tuple[str, int, int, int]]:
        """Count records per time bucket.

        Args:
            filters: Filters applied before grouping
            granularity: "hour", "day" or "month"

        Returns:
            List of (bucket_key, count, errors, security) tuples, key ascending
        """
        bucket = self._bucket(granularity)
        error_values = [status.value for status in ERROR_STATUSES]
        stmt = (
            apply_filters(
                select(
                    bucket.label("bucket"),
                    func.count().label("count"),
                    func.sum(case((AuditLogRecord.status.in_(error_values), 1), else_=0)),
                    func.sum(case((_is_security(), 1), else_=0)),
                ),
                filters,
            )
            .group_by(bucket)
            .order_by(bucket)
        )
        result = await self._session.execute(stmt)
        return [(row[0], row[1], int(row[2] or 0), int(row[3] or 0)) for row in result.fetchall()]

    async def actions_by_bucket(
        self, filters: AuditQueryFilters, granularity: str
    ) -> list[tuple[str, str]]:
        """Return the distinct (bucket_key, action) pairs, both ascending."""
        bucket = self._bucket(granularity)
        stmt = (
            apply_filters(select(bucket.label("bucket"), AuditLogRecord.action), filters)
            .group_by(bucket, AuditLogRecord.action)
            .order_by(bucket, AuditLogRecord.action)
        )
        result = await self._session.execute(stmt)
        return [(row[0], row[1]) for row in result.fetchall()]

    async def delete_before(self, cutoff: datetime) -> int:
        """Delete every record older than cutoff.

        Tag rows are removed explicitly so the delete does not depend on
        the backend enforcing ON DELETE CASCADE.

        Args:
            cutoff: Records with timestamp < cutoff are deleted

        Returns:
            Number of audit records deleted
        """
        cutoff = to_utc(cutoff)
        expired_ids = select(AuditLogRecord.id).where(AuditLogRecord.timestamp < cutoff)
        await self._session.execute(
            delete(AuditLogTag)
            .where(AuditLogTag.audit_log_id.in_(expired_ids))
            .execution_options(synchronize_session="fetch")
        )
        result = await self._session.execute(
            delete(AuditLogRecord)
            .where(AuditLogRecord.timestamp < cutoff)
            .execution_options(synchronize_session="fetch")
        )
        await self._session.commit()
        return result.rowcount or 0


class SqlAuditStore:
    """Durable store used by the batching engine.

    Opens a fresh session for every write so that writes triggered from
    timers and background tasks never share a request-scoped session.

    Args:
        session_factory: Factory producing AsyncSession instances
    """

    def __init__(self, session_factory: async_sessionmaker | Any) -> None:
        self._session_factory = session_factory

    async def insert_one(self, event: AuditEvent) -> None:
        await self.insert_many([event])

    async def _insert(self, events: Sequence[AuditEvent]) -> None:
        async with self._session_factory() as session:
            await AuditRepository(session).insert_events(events)

    async def insert_many(self, events: Sequence[AuditEvent]) -> None:
        """Insert events in one transaction.

        A batch rejected for its data (constraint or value errors) is retried
        row by row, so only the offending rows are lost. Connection and other
        store errors raise AuditStoreError and leave retrying to the caller.

        Raises:
            AuditStoreError: If the store is unavailable
        """
        try:
            await self._insert(events)
        except (DataError, IntegrityError) as e:
            if len(events) == 1:
                raise AuditStoreError(str(e), batch_size=1) from e
            logger.warning(
                "Batch of %d audit events rejected (%s); inserting one by one",
                len(events),
                type(e.orig).__name__ if e.orig is not None else type(e).__name__,
            )
            await self._insert_each(events)
            return
        except SQLAlchemyError as e:
            raise AuditStoreError(str(e), batch_size=len(events)) from e
        logger.debug("Inserted %d audit events", len(events))

    async def _insert_each(self, events: Sequence[AuditEvent]) -> None:
        rejected = 0
        for event in events:
            try:
                await self._insert([event])
            except (DataError, IntegrityError):
                rejected += 1
                logger.exception(
                    "Audit event %s (%s) rejected by the store", event.event_id, event.action.value
                )
            except SQLAlchemyError as e:
                raise AuditStoreError(str(e), batch_size=len(events)) from e
        logger.debug("Inserted %d of %d audit events", len(events) - rejected, len(events))
