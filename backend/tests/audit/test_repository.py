"""Tests for AuditRepository and SqlAuditStore against in-memory SQLite."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError
from src.audit.errors import AuditStoreError
from src.audit.factory import create_audit_event, resource_event, security_event
from src.audit.models import (
    ActorRef,
    AuditAction,
    AuditPriority,
    AuditStatus,
    RequestContext,
    ResourceRef,
    ResourceType,
)
from src.audit.repository import (
    AuditQueryFilters,
    AuditRepository,
    SqlAuditStore,
    event_to_record,
    to_utc,
)

BASE_TIME = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def create_test_event(
    action=AuditAction.LAND_VIEW,
    status=AuditStatus.SUCCESS,
    priority=AuditPriority.MEDIUM,
    user_id="user-1",
    ip_address="10.0.0.1",
    minutes_ago=0,
):
    """Helper to create test audit events at a fixed offset from BASE_TIME."""
    return create_audit_event(
        action=action,
        status=status,
        priority=priority,
        actor=ActorRef(user_id=user_id, email=f"{user_id}@example.com", role="user"),
        request=RequestContext(method="GET", endpoint="/api/v1/land", ip_address=ip_address),
        timestamp=BASE_TIME - timedelta(minutes=minutes_ago),
    )


class TestToUtc:
    def test_naive_is_taken_as_utc(self):
        expected = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

        assert to_utc(datetime(2026, 1, 1, 12, 0)) == expected

    def test_aware_is_converted(self):
        plus_two = timezone(timedelta(hours=2))

        result = to_utc(datetime(2026, 1, 1, 12, 0, tzinfo=plus_two))

        assert result == datetime(2026, 1, 1, 10, 0, tzinfo=timezone.utc)
        assert result.tzinfo == timezone.utc


class TestEventToRecord:
    def test_maps_every_sub_record(self):
        event = resource_event(
            AuditAction.LAND_UPDATE,
            ResourceType.LAND,
            {"id": "u1", "email": "a@example.com", "role": "admin"},
            {"id": "land-1", "title": "North plot"},
            None,
            old_data={"price": 1},
            new_data={"price": 2},
        )

        record = event_to_record(event)

        assert record.id == event.event_id
        assert record.action == "LAND_UPDATE"
        assert record.user_id == "u1"
        assert record.resource_type == "LAND"
        assert record.resource_name == "North plot"
        assert record.old_data == {"price": 1}
        assert record.changes == ["price: 1 → 2"]
        assert record.tags == list(event.tags)

    def test_clips_client_controlled_strings(self):
        event = create_audit_event(
            action=AuditAction.API_REQUEST,
            status=AuditStatus.SUCCESS,
            resource=ResourceRef(type=ResourceType.LAND, id="l" * 80, name="n" * 300),
            request=RequestContext(
                method="GET",
                endpoint="/api/v1/land/" + "x" * 2000,
                ip_address="10.0.0.1, " * 20,
                user_agent="Mozilla/5.0 " * 60,
            ),
        )

        record = event_to_record(event)

        assert len(record.user_agent) == 500
        assert record.user_agent == event.request.user_agent[:500]
        assert len(record.ip_address) == 64
        assert len(record.resource_id) == 64
        assert len(record.resource_name) == 255
        # Text columns are not clipped
        assert record.endpoint == event.request.endpoint


class TestAuditRepository:
    """Tests for AuditRepository database operations."""

    @pytest.mark.asyncio
    async def test_insert_and_get(self, db_session):
        repo = AuditRepository(db_session)
        event = create_test_event()

        assert await repo.insert_events([event]) == 1
        record = await repo.get_event(event.event_id)

        assert record is not None
        assert record.action == "LAND_VIEW"
        assert to_utc(record.timestamp) == BASE_TIME
        assert record.tags == ["LAND_MANAGEMENT", "SUCCESS", "MEDIUM"]

    @pytest.mark.asyncio
    async def test_insert_nothing(self, db_session):
        assert await AuditRepository(db_session).insert_events([]) == 0

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, db_session):
        assert await AuditRepository(db_session).get_event(uuid4()) is None

    @pytest.mark.asyncio
    async def test_query_newest_first(self, db_session):
        repo = AuditRepository(db_session)
        events = [create_test_event(minutes_ago=m) for m in (30, 10, 20)]
        await repo.insert_events(events)

        records = await repo.query_events(AuditQueryFilters())

        assert [r.id for r in records] == [
            events[1].event_id,
            events[2].event_id,
            events[0].event_id,
        ]

    @pytest.mark.asyncio
    async def test_filters_are_conjunctive(self, db_session):
        repo = AuditRepository(db_session)
        match = create_test_event(user_id="alice", ip_address="1.1.1.1")
        await repo.insert_events(
            [
                match,
                create_test_event(user_id="alice", ip_address="2.2.2.2"),
                create_test_event(user_id="bob", ip_address="1.1.1.1"),
            ]
        )

        records = await repo.query_events(
            AuditQueryFilters(user_id="alice", ip_address="1.1.1.1")
        )

        assert [r.id for r in records] == [match.event_id]

    @pytest.mark.asyncio
    async def test_date_bounds_are_inclusive(self, db_session):
        repo = AuditRepository(db_session)
        await repo.insert_events([create_test_event(minutes_ago=m) for m in (0, 60, 120)])

        count = await repo.count_events(
            AuditQueryFilters(
                start_date=BASE_TIME - timedelta(minutes=60),
                end_date=BASE_TIME,
            )
        )

        assert count == 2

    @pytest.mark.asyncio
    async def test_tag_filter_matches_any(self, db_session):
        repo = AuditRepository(db_session)
        flagged = security_event(AuditAction.SUSPICIOUS_ACTIVITY, None, None)
        failed = create_test_event(status=AuditStatus.FAILURE)
        await repo.insert_events([flagged, failed, create_test_event()])

        records = await repo.query_events(AuditQueryFilters(tags=("SECURITY", "ERROR")))

        assert {r.id for r in records} == {flagged.event_id, failed.event_id}

    @pytest.mark.asyncio
    async def test_status_in_filter(self, db_session):
        repo = AuditRepository(db_session)
        await repo.insert_events(
            [
                create_test_event(status=AuditStatus.ERROR),
                create_test_event(status=AuditStatus.FAILURE),
                create_test_event(status=AuditStatus.SUCCESS),
            ]
        )

        count = await repo.count_events(
            AuditQueryFilters(status_in=(AuditStatus.ERROR, AuditStatus.FAILURE))
        )

        assert count == 2

    @pytest.mark.asyncio
    async def test_count_grouped(self, db_session):
        repo = AuditRepository(db_session)
        await repo.insert_events(
            [
                create_test_event(action=AuditAction.LAND_VIEW),
                create_test_event(action=AuditAction.LAND_VIEW),
                create_test_event(action=AuditAction.USER_SIGNIN, status=AuditStatus.FAILURE),
            ]
        )

        rows = await repo.count_grouped(AuditQueryFilters())

        assert sorted(rows) == [
            ("LAND_VIEW", "SUCCESS", "MEDIUM", 2),
            ("USER_SIGNIN", "FAILURE", "MEDIUM", 1),
        ]

    @pytest.mark.asyncio
    async def test_count_by_bucket_groups_in_sql(self, db_session):
        repo = AuditRepository(db_session)
        next_day = replace(
            security_event(AuditAction.LOGIN_FAILED, None, None),
            timestamp=BASE_TIME + timedelta(days=1),
        )
        await repo.insert_events(
            [
                create_test_event(),
                create_test_event(status=AuditStatus.ERROR, minutes_ago=30),
                next_day,
            ]
        )

        rows = await repo.count_by_bucket(AuditQueryFilters(), "day")

        assert rows == [("2026-03-10", 2, 1, 0), ("2026-03-11", 1, 0, 1)]

    @pytest.mark.asyncio
    async def test_actions_by_bucket_are_distinct(self, db_session):
        repo = AuditRepository(db_session)
        await repo.insert_events(
            [
                create_test_event(action=AuditAction.LAND_VIEW),
                create_test_event(action=AuditAction.LAND_VIEW, minutes_ago=5),
                create_test_event(action=AuditAction.LAND_CREATE),
            ]
        )

        rows = await repo.actions_by_bucket(AuditQueryFilters(), "month")

        assert rows == [("2026-03", "LAND_CREATE"), ("2026-03", "LAND_VIEW")]

    def test_bucket_expression_per_dialect(self):
        from sqlalchemy.dialects import postgresql, sqlite
        from src.audit.repository import bucket_expression

        pg = str(bucket_expression("postgresql", "hour").compile(dialect=postgresql.dialect()))
        lite = str(bucket_expression("sqlite", "month").compile(dialect=sqlite.dialect()))

        assert pg == "to_char(timezone('UTC', audit_logs.timestamp), 'YYYY-MM-DD-HH24')"
        assert lite == "strftime('%Y-%m', audit_logs.timestamp)"
        with pytest.raises(NotImplementedError):
            bucket_expression("mysql", "day")

    @pytest.mark.asyncio
    async def test_delete_before(self, db_session):
        repo = AuditRepository(db_session)
        old = create_test_event(minutes_ago=120)
        new = create_test_event(minutes_ago=0)
        await repo.insert_events([old, new])

        deleted = await repo.delete_before(BASE_TIME - timedelta(minutes=60))

        assert deleted == 1
        assert await repo.get_event(old.event_id) is None
        assert await repo.count_events(AuditQueryFilters()) == 1


class TestSqlAuditStore:
    """Tests for the session-per-call store adapter."""

    @pytest.mark.asyncio
    async def test_insert_many_and_one(self, session_factory):
        store = SqlAuditStore(session_factory)

        await store.insert_many([create_test_event(), create_test_event()])
        await store.insert_one(create_test_event())

        async with session_factory() as session:
            assert await AuditRepository(session).count_events(AuditQueryFilters()) == 3

    @pytest.mark.asyncio
    async def test_wraps_database_errors(self):
        failing_session = MagicMock()
        failing_session.__aenter__.side_effect = OperationalError("INSERT", {}, Exception("down"))
        store = SqlAuditStore(lambda: failing_session)

        with pytest.raises(AuditStoreError) as exc_info:
            await store.insert_many([create_test_event()])

        assert exc_info.value.batch_size == 1

    @pytest.mark.asyncio
    async def test_rejected_row_does_not_drop_its_batch(self, session_factory):
        """A row the store rejects is skipped; the rest of the batch is kept."""
        store = SqlAuditStore(session_factory)
        already_stored = create_test_event()
        await store.insert_one(already_stored)

        batch = [create_test_event(user_id="u2"), already_stored, create_test_event(user_id="u3")]
        await store.insert_many(batch)

        async with session_factory() as session:
            repo = AuditRepository(session)
            assert await repo.count_events(AuditQueryFilters()) == 3
            assert await repo.count_events(AuditQueryFilters(user_id="u2")) == 1
            assert await repo.count_events(AuditQueryFilters(user_id="u3")) == 1

    @pytest.mark.asyncio
    async def test_rejected_single_event_raises(self, session_factory):
        store = SqlAuditStore(session_factory)
        event = create_test_event()
        await store.insert_one(event)

        with pytest.raises(AuditStoreError):
            await store.insert_one(event)
