"""Read-side query and aggregation over stored audit records.

AuditQueryService backs the admin audit API:
- list_events / get_event: filtered, paginated retrieval
- summary: per-action breakdown plus global counters
- by_date_range: hour/day/month buckets with error and security counts
- export: unpaginated retrieval, optionally rendered as CSV
- cleanup: retention delete
- user_logs / system_logs / security_logs / error_logs: preset filters

All methods are read-only except cleanup. Sort order is always timestamp
descending for record lists and bucket key ascending for aggregations.
"""

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from src.audit.config import ERROR_STATUSES, SECURITY_TAG
from src.audit.errors import AuditLogNotFoundError, InvalidAuditQueryError
from src.audit.export import records_to_csv
from src.audit.models import ResourceType
from src.audit.repository import AuditQueryFilters, AuditRepository, to_utc
from src.models.audit_log import AuditLogRecord

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 1000
DEFAULT_RETENTION_DAYS = 90


class Granularity(str, Enum):
    """Time-bucket width for date-range aggregation."""

    HOUR = "hour"
    DAY = "day"
    MONTH = "month"


class ExportFormat(str, Enum):
    CSV = "csv"
    JSON = "json"


@dataclass
class AuditPage:
    """One page of audit records."""

    items: list[AuditLogRecord]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0


@dataclass
class StatusPriorityCount:
    status: str
    priority: str
    count: int


@dataclass
class ActionSummary:
    """Counts for one action, broken down by (status, priority)."""

    action: str
    total_count: int
    statuses: list[StatusPriorityCount] = field(default_factory=list)


@dataclass
class AuditStatistics:
    """Store-wide counters reported alongside the summary."""

    total_logs: int
    today_logs: int
    error_logs: int
    security_logs: int


@dataclass
class AuditSummary:
    actions: list[ActionSummary]
    statistics: AuditStatistics

    @property
    def total_count(self) -> int:
        """Records covered by the per-action breakdown."""
        return sum(item.total_count for item in self.actions)


@dataclass
class ActivityBucket:
    """Aggregated activity for one time bucket."""

    key: str
    count: int = 0
    errors: int = 0
    security: int = 0
    actions: list[str] = field(default_factory=list)


@dataclass
class AuditExport:
    """Result of an export: the records, and the CSV text when requested."""

    format: ExportFormat
    records: list[AuditLogRecord]
    content: str | None = None

    @property
    def count(self) -> int:
        return len(self.records)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _validate_pagination(page: int, page_size: int) -> None:
    if page < 1:
        raise InvalidAuditQueryError("page must be >= 1", field="page")
    if page_size < 1 or page_size > MAX_PAGE_SIZE:
        raise InvalidAuditQueryError(
            f"page_size must be between 1 and {MAX_PAGE_SIZE}", field="page_size"
        )


def _validate_range(filters: AuditQueryFilters) -> None:
    if (
        filters.start_date is not None
        and filters.end_date is not None
        and to_utc(filters.start_date) > to_utc(filters.end_date)
    ):
        raise InvalidAuditQueryError("start_date must not be after end_date", field="start_date")


def parse_granularity(value: str | Granularity) -> Granularity:
    """Parse a granularity name.

    Raises:
        InvalidAuditQueryError: If value is not hour, day or month
    """
    try:
        return Granularity(value)
    except ValueError as e:
        raise InvalidAuditQueryError(
            f"Invalid granularity: {value!r} (expected hour, day or month)",
            field="granularity",
        ) from e


class AuditQueryService:
    """Query and aggregation service over the audit store.

    Args:
        session: SQLAlchemy async session for database operations
        clock: Returns the current time; injected for tests
    """

    def __init__(
        self,
        session: AsyncSession,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._repo = AuditRepository(session)
        self._clock = clock

    async def list_events(
        self,
        filters: AuditQueryFilters | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> AuditPage:
        """List records matching filters, newest first.

        Args:
            filters: Conjunction of filters (None matches everything)
            page: 1-indexed page number
            page_size: Records per page

        Returns:
            The requested page with total count

        Raises:
            InvalidAuditQueryError: On bad pagination or an inverted date range
        """
        filters = filters or AuditQueryFilters()
        _validate_pagination(page, page_size)
        _validate_range(filters)

        total = await self._repo.count_events(filters)
        items = await self._repo.query_events(
            filters, offset=(page - 1) * page_size, limit=page_size
        )
        return AuditPage(items=items, total=total, page=page, page_size=page_size)

    async def get_event(self, event_id: UUID) -> AuditLogRecord:
        """Get a single record.

        Raises:
            AuditLogNotFoundError: If no record has this id
        """
        record = await self._repo.get_event(event_id)
        if record is None:
            raise AuditLogNotFoundError(str(event_id))
        return record

    async def summary(
        self,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> AuditSummary:
        """Summarize records by action, then by (status, priority).

        The breakdown honours the optional date range; the statistics are
        store-wide. "Today" starts at local midnight.

        Args:
            start_date: Inclusive lower bound for the breakdown
            end_date: Inclusive upper bound for the breakdown

        Returns:
            Per-action summaries sorted by total count descending, then action
        """
        filters = AuditQueryFilters(start_date=start_date, end_date=end_date)
        _validate_range(filters)

        by_action: dict[str, ActionSummary] = {}
        for action, status, priority, count in await self._repo.count_grouped(filters):
            item = by_action.setdefault(action, ActionSummary(action=action, total_count=0))
            item.statuses.append(StatusPriorityCount(status=status, priority=priority, count=count))
            item.total_count += count

        for item in by_action.values():
            item.statuses.sort(key=lambda s: (s.status, s.priority))
        actions = sorted(by_action.values(), key=lambda a: (-a.total_count, a.action))

        local_midnight = self._clock().astimezone().replace(
            hour=0, minute=0, second=0, microsecond=0
        )
        statistics = AuditStatistics(
            total_logs=await self._repo.count_events(AuditQueryFilters()),
            today_logs=await self._repo.count_events(
                AuditQueryFilters(start_date=local_midnight)
            ),
            error_logs=await self._repo.count_events(
                AuditQueryFilters(status_in=tuple(ERROR_STATUSES))
            ),
            security_logs=await self._repo.count_events(
                AuditQueryFilters(tags=(SECURITY_TAG,))
            ),
        )
        return AuditSummary(actions=actions, statistics=statistics)

    async def by_date_range(
        self,
        start_date: datetime | None,
        end_date: datetime | None,
        granularity: str | Granularity = Granularity.DAY,
    ) -> list[ActivityBucket]:
        """Aggregate records into time buckets.

        Bucket keys are UTC times formatted as YYYY-MM-DD-HH, YYYY-MM-DD or
        YYYY-MM, so lexical order is chronological order.

        Args:
            start_date: Inclusive lower bound (required)
            end_date: Inclusive upper bound (required)
            granularity: hour, day or month

        Returns:
            Buckets sorted ascending by key

        Raises:
            InvalidAuditQueryError: If a bound is missing, the range is
                inverted, or granularity is unknown
        """
        if start_date is None or end_date is None:
            raise InvalidAuditQueryError("Start date and end date are required", field="start_date")
        granularity = parse_granularity(granularity)
        filters = AuditQueryFilters(start_date=start_date, end_date=end_date)
        _validate_range(filters)

        buckets = {
            key: ActivityBucket(key=key, count=count, errors=errors, security=security)
            for key, count, errors, security in await self._repo.count_by_bucket(
                filters, granularity.value
            )
        }
        for key, action in await self._repo.actions_by_bucket(filters, granularity.value):
            buckets[key].actions.append(action)
        return list(buckets.values())

    async def export(
        self,
        filters: AuditQueryFilters | None = None,
        export_format: str | ExportFormat = ExportFormat.CSV,
    ) -> AuditExport:
        """Export every matching record, newest first.

        Args:
            filters: Same semantics as list_events
            export_format: "csv" renders content; anything else returns records only

        Returns:
            The export result
        """
        filters = filters or AuditQueryFilters()
        _validate_range(filters)
        records = await self._repo.query_events(filters)

        if export_format == ExportFormat.CSV:
            return AuditExport(
                format=ExportFormat.CSV, records=records, content=records_to_csv(records)
            )
        return AuditExport(format=ExportFormat.JSON, records=records)

    async def cleanup(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Delete records older than retention_days.

        Args:
            retention_days: Records with timestamp < now - retention_days are deleted

        Returns:
            Number of records deleted

        Raises:
            InvalidAuditQueryError: If retention_days is negative
        """
        if retention_days < 0:
            raise InvalidAuditQueryError("days must be >= 0", field="days")

        cutoff = to_utc(self._clock()) - timedelta(days=retention_days)
        deleted = await self._repo.delete_before(cutoff)
        logger.info("Deleted %d audit logs older than %d days", deleted, retention_days)
        return deleted

    # Preset queries

    async def user_logs(
        self,
        user_id: str,
        filters: AuditQueryFilters | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> AuditPage:
        """Records whose actor is user_id."""
        filters = replace(filters or AuditQueryFilters(), user_id=user_id)
        return await self.list_events(filters, page, page_size)

    async def system_logs(
        self,
        filters: AuditQueryFilters | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> AuditPage:
        """Records about the SYSTEM resource."""
        filters = replace(filters or AuditQueryFilters(), resource_type=ResourceType.SYSTEM)
        return await self.list_events(filters, page, page_size)

    async def security_logs(
        self,
        filters: AuditQueryFilters | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> AuditPage:
        """Records carrying the SECURITY tag."""
        filters = replace(filters or AuditQueryFilters(), tags=(SECURITY_TAG,))
        return await self.list_events(filters, page, page_size)

    async def error_logs(
        self,
        filters: AuditQueryFilters | None = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> AuditPage:
        """Records with ERROR or FAILURE outcome."""
        filters = replace(
            filters or AuditQueryFilters(), status=None, status_in=tuple(ERROR_STATUSES)
        )
        return await self.list_events(filters, page, page_size)
