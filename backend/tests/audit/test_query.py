"""Tests for AuditQueryService queries, aggregations and retention."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from src.audit.errors import AuditLogNotFoundError, InvalidAuditQueryError
from src.audit.factory import create_audit_event, security_event
from src.audit.models import (
    ActorRef,
    AuditAction,
    AuditPriority,
    AuditStatus,
    ResourceRef,
    ResourceType,
)
from src.audit.query import AuditQueryService, ExportFormat, Granularity, parse_granularity
from src.audit.repository import AuditQueryFilters, AuditRepository

NOW = datetime(2026, 3, 10, 12, 30, tzinfo=timezone.utc)


def _event(
    at,
    action=AuditAction.LAND_VIEW,
    status=AuditStatus.SUCCESS,
    priority=AuditPriority.MEDIUM,
    user_id="user-1",
    resource_type=ResourceType.LAND,
):
    return create_audit_event(
        action=action,
        status=status,
        priority=priority,
        actor=ActorRef(user_id=user_id, email=f"{user_id}@example.com", role="user"),
        resource=ResourceRef(type=resource_type),
        timestamp=at,
    )


async def _seed(db_session, events):
    await AuditRepository(db_session).insert_events(events)
    return events


def _service(db_session):
    return AuditQueryService(db_session, clock=lambda: NOW)


class TestParseGranularity:
    def test_known_values(self):
        assert parse_granularity("hour") is Granularity.HOUR
        assert parse_granularity(Granularity.MONTH) is Granularity.MONTH

    def test_unknown_value(self):
        with pytest.raises(InvalidAuditQueryError):
            parse_granularity("week")


class TestListEvents:
    """Tests for list_events() pagination and validation."""

    @pytest.mark.asyncio
    async def test_pages_are_exhaustive_and_disjoint(self, db_session):
        """Concatenated pages reproduce the full result with no duplicates."""
        # Several events share a timestamp so ordering relies on the id tiebreak
        events = [_event(NOW - timedelta(minutes=i // 3)) for i in range(23)]
        await _seed(db_session, events)
        service = _service(db_session)

        full = await service.export(export_format=ExportFormat.JSON)
        collected = []
        first = await service.list_events(page=1, page_size=5)
        for page in range(1, first.pages + 1):
            result = await service.list_events(page=page, page_size=5)
            collected.extend(result.items)

        assert first.total == 23
        assert first.pages == 5
        assert [r.id for r in collected] == [r.id for r in full.records]
        assert len({r.id for r in collected}) == 23
        timestamps = [r.timestamp for r in collected]
        assert timestamps == sorted(timestamps, reverse=True)

    @pytest.mark.asyncio
    async def test_page_past_the_end_is_empty(self, db_session):
        await _seed(db_session, [_event(NOW)])

        result = await _service(db_session).list_events(page=3, page_size=10)

        assert result.items == []
        assert result.total == 1

    @pytest.mark.asyncio
    async def test_empty_store(self, db_session):
        result = await _service(db_session).list_events()

        assert result.items == []
        assert result.total == 0
        assert result.pages == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("page,page_size", [(0, 10), (1, 0), (1, 1001)])
    async def test_rejects_bad_pagination(self, db_session, page, page_size):
        with pytest.raises(InvalidAuditQueryError):
            await _service(db_session).list_events(page=page, page_size=page_size)

    @pytest.mark.asyncio
    async def test_rejects_inverted_range(self, db_session):
        filters = AuditQueryFilters(start_date=NOW, end_date=NOW - timedelta(days=1))

        with pytest.raises(InvalidAuditQueryError):
            await _service(db_session).list_events(filters)


class TestGetEvent:
    @pytest.mark.asyncio
    async def test_found(self, db_session):
        (event,) = await _seed(db_session, [_event(NOW)])

        record = await _service(db_session).get_event(event.event_id)

        assert record.id == event.event_id

    @pytest.mark.asyncio
    async def test_not_found(self, db_session):
        with pytest.raises(AuditLogNotFoundError):
            await _service(db_session).get_event(uuid4())


class TestSummary:
    """Tests for summary()."""

    @pytest.mark.asyncio
    async def test_breakdown_and_statistics(self, db_session):
        await _seed(
            db_session,
            [
                _event(NOW, AuditAction.LAND_VIEW),
                _event(NOW, AuditAction.LAND_VIEW),
                _event(NOW, AuditAction.LAND_VIEW, status=AuditStatus.FAILURE),
                _event(NOW - timedelta(days=3), AuditAction.USER_SIGNIN),
                _event(NOW - timedelta(days=3), AuditAction.SYSTEM_ERROR, AuditStatus.ERROR),
                security_event(AuditAction.LOGIN_FAILED, None, None),
            ],
        )

        summary = await _service(db_session).summary()

        assert [a.action for a in summary.actions][0] == "LAND_VIEW"
        land = summary.actions[0]
        assert land.total_count == 3
        assert {(s.status, s.priority, s.count) for s in land.statuses} == {
            ("SUCCESS", "MEDIUM", 2),
            ("FAILURE", "MEDIUM", 1),
        }
        assert summary.statistics.total_logs == 6
        assert summary.statistics.error_logs == 2
        assert summary.statistics.security_logs == 1

    @pytest.mark.asyncio
    async def test_today_starts_at_local_midnight(self, db_session):
        await _seed(
            db_session,
            [_event(NOW), _event(NOW - timedelta(days=3))],
        )

        summary = await _service(db_session).summary()

        assert summary.statistics.today_logs == 1

    @pytest.mark.asyncio
    async def test_totals_are_consistent_under_a_filter(self, db_session):
        """Per-action totals add up to the record count in the same range."""
        start = NOW - timedelta(days=1)
        await _seed(
            db_session,
            [
                _event(NOW, AuditAction.LAND_VIEW),
                _event(NOW - timedelta(hours=1), AuditAction.LISTING_CREATE),
                _event(NOW - timedelta(hours=2), AuditAction.LISTING_CREATE),
                _event(NOW - timedelta(days=5), AuditAction.USER_SIGNUP),
            ],
        )
        service = _service(db_session)

        summary = await service.summary(start_date=start, end_date=NOW)
        listed = await service.list_events(AuditQueryFilters(start_date=start, end_date=NOW))

        assert summary.total_count == listed.total == 3
        assert [a.action for a in summary.actions] == ["LISTING_CREATE", "LAND_VIEW"]
        # Statistics ignore the range
        assert summary.statistics.total_logs == 4

    @pytest.mark.asyncio
    async def test_ties_sorted_by_action(self, db_session):
        await _seed(
            db_session,
            [_event(NOW, AuditAction.USER_SIGNUP), _event(NOW, AuditAction.LAND_CREATE)],
        )

        summary = await _service(db_session).summary()

        assert [a.action for a in summary.actions] == ["LAND_CREATE", "USER_SIGNUP"]


class TestByDateRange:
    """Tests for by_date_range() bucketing."""

    @pytest.mark.asyncio
    async def test_hour_buckets(self, db_session):
        await _seed(
            db_session,
            [
                _event(datetime(2026, 3, 10, 9, 5, tzinfo=timezone.utc), AuditAction.LAND_VIEW),
                _event(
                    datetime(2026, 3, 10, 9, 55, tzinfo=timezone.utc),
                    AuditAction.USER_SIGNIN,
                    AuditStatus.FAILURE,
                ),
                _event(datetime(2026, 3, 10, 11, 0, tzinfo=timezone.utc), AuditAction.LAND_VIEW),
            ],
        )

        buckets = await _service(db_session).by_date_range(
            datetime(2026, 3, 10, tzinfo=timezone.utc),
            datetime(2026, 3, 11, tzinfo=timezone.utc),
            "hour",
        )

        assert [b.key for b in buckets] == ["2026-03-10-09", "2026-03-10-11"]
        assert buckets[0].count == 2
        assert buckets[0].errors == 1
        assert buckets[0].actions == ["LAND_VIEW", "USER_SIGNIN"]
        assert buckets[1].count == 1

    @pytest.mark.asyncio
    async def test_month_buckets_ascending_with_security(self, db_session):
        await _seed(
            db_session,
            [
                _event(datetime(2026, 2, 20, tzinfo=timezone.utc)),
                _event(datetime(2026, 1, 5, tzinfo=timezone.utc)),
                _event(datetime(2026, 1, 6, tzinfo=timezone.utc)),
                _event(
                    datetime(2026, 1, 7, tzinfo=timezone.utc),
                    AuditAction.LOGIN_FAILED,
                    AuditStatus.WARNING,
                ),
            ],
        )

        buckets = await _service(db_session).by_date_range(
            datetime(2026, 1, 1, tzinfo=timezone.utc),
            datetime(2026, 3, 1, tzinfo=timezone.utc),
            Granularity.MONTH,
        )

        assert [(b.key, b.count, b.security) for b in buckets] == [
            ("2026-01", 3, 1),
            ("2026-02", 1, 0),
        ]

    @pytest.mark.asyncio
    async def test_requires_both_dates(self, db_session):
        with pytest.raises(InvalidAuditQueryError):
            await _service(db_session).by_date_range(None, NOW)

    @pytest.mark.asyncio
    async def test_rejects_unknown_granularity(self, db_session):
        with pytest.raises(InvalidAuditQueryError):
            await _service(db_session).by_date_range(NOW - timedelta(days=1), NOW, "week")


class TestExport:
    @pytest.mark.asyncio
    async def test_csv_uses_list_filters(self, db_session):
        await _seed(
            db_session,
            [_event(NOW, user_id="alice"), _event(NOW, user_id="bob")],
        )

        export = await _service(db_session).export(AuditQueryFilters(user_id="alice"))

        assert export.format is ExportFormat.CSV
        assert export.count == 1
        assert len(export.content.split("\n")) == 2

    @pytest.mark.asyncio
    async def test_json_has_no_content(self, db_session):
        await _seed(db_session, [_event(NOW)])

        export = await _service(db_session).export(export_format="json")

        assert export.format is ExportFormat.JSON
        assert export.content is None
        assert export.count == 1


class TestCleanup:
    """Tests for cleanup() retention."""

    @pytest.mark.asyncio
    async def test_deletes_only_expired(self, db_session):
        """10 records older than 30 days are deleted, 5 newer survive."""
        old = [_event(NOW - timedelta(days=31 + i)) for i in range(10)]
        recent = [_event(NOW - timedelta(days=1 + i)) for i in range(5)]
        await _seed(db_session, old + recent)
        service = _service(db_session)

        deleted = await service.cleanup(30)

        assert deleted == 10
        remaining = await service.list_events()
        assert {r.id for r in remaining.items} == {e.event_id for e in recent}

    @pytest.mark.asyncio
    async def test_nothing_to_delete(self, db_session):
        await _seed(db_session, [_event(NOW)])

        assert await _service(db_session).cleanup() == 0

    @pytest.mark.asyncio
    async def test_rejects_negative_days(self, db_session):
        with pytest.raises(InvalidAuditQueryError):
            await _service(db_session).cleanup(-1)


class TestPresets:
    """Tests for the preset queries."""

    @pytest.mark.asyncio
    async def test_user_logs(self, db_session):
        await _seed(db_session, [_event(NOW, user_id="alice"), _event(NOW, user_id="bob")])

        result = await _service(db_session).user_logs("alice")

        assert [r.user_id for r in result.items] == ["alice"]

    @pytest.mark.asyncio
    async def test_system_logs(self, db_session):
        await _seed(
            db_session,
            [
                _event(NOW),
                _event(NOW, AuditAction.SYSTEM_STARTUP, resource_type=ResourceType.SYSTEM),
            ],
        )

        result = await _service(db_session).system_logs()

        assert [r.action for r in result.items] == ["SYSTEM_STARTUP"]

    @pytest.mark.asyncio
    async def test_security_logs(self, db_session):
        flagged = security_event(AuditAction.UNAUTHORIZED_ACCESS, None, None)
        await _seed(db_session, [_event(NOW), flagged])

        result = await _service(db_session).security_logs()

        assert [r.id for r in result.items] == [flagged.event_id]

    @pytest.mark.asyncio
    async def test_error_logs_ignore_status_filter(self, db_session):
        await _seed(
            db_session,
            [
                _event(NOW, status=AuditStatus.ERROR),
                _event(NOW, status=AuditStatus.FAILURE),
                _event(NOW, status=AuditStatus.SUCCESS),
            ],
        )

        result = await _service(db_session).error_logs(
            AuditQueryFilters(status=AuditStatus.SUCCESS)
        )

        assert result.total == 2
        assert {r.status for r in result.items} == {"ERROR", "FAILURE"}
