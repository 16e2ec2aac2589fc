"""Tests for AuditService immediate and batched write paths."""

import asyncio
from unittest.mock import patch

import pytest
from src.audit.errors import AuditConfigError
from src.audit.factory import create_audit_event, system_event
from src.audit.models import AuditAction, AuditPriority, AuditStatus
from src.audit.service import AuditService


def _medium_event():
    return create_audit_event(
        action=AuditAction.LAND_VIEW,
        status=AuditStatus.SUCCESS,
        priority=AuditPriority.MEDIUM,
    )


class TestAuditServiceInit:
    """Tests for AuditService configuration."""

    @pytest.mark.parametrize(
        "kwargs",
        [{"batch_size": 0}, {"batch_timeout_ms": 0}, {"write_timeout_s": -1}],
    )
    def test_rejects_non_positive_settings(self, recording_store, kwargs):
        with pytest.raises(AuditConfigError):
            AuditService(recording_store, **kwargs)

    def test_starts_empty(self, recording_store):
        service = AuditService(recording_store)

        assert service.enabled is True
        assert service.pending_count == 0
        assert service.timer_armed is False


class TestImmediateWrites:
    """CRITICAL or ERROR events are durable when submit returns."""

    @pytest.mark.asyncio
    async def test_error_event_written_immediately(self, recording_store):
        """One ERROR event is in the store before any flush could run."""
        service = AuditService(recording_store, batch_size=100, batch_timeout_ms=60_000)
        event = create_audit_event(action=AuditAction.SYSTEM_ERROR, status=AuditStatus.ERROR)

        await service.submit(event)

        assert recording_store.single_writes == [event]
        assert recording_store.batches == []
        assert service.pending_count == 0
        assert service.timer_armed is False

    @pytest.mark.asyncio
    async def test_critical_event_written_immediately(self, recording_store):
        service = AuditService(recording_store)
        event = system_event(AuditAction.SYSTEM_ERROR, priority=AuditPriority.CRITICAL)

        await service.submit(event)

        assert recording_store.single_writes == [event]

    @pytest.mark.asyncio
    async def test_immediate_events_bypass_min_priority(self, recording_store):
        service = AuditService(recording_store, min_priority=AuditPriority.CRITICAL)
        event = create_audit_event(
            action=AuditAction.SYSTEM_ERROR,
            status=AuditStatus.ERROR,
            priority=AuditPriority.LOW,
        )

        await service.submit(event)

        assert recording_store.single_writes == [event]

    @pytest.mark.asyncio
    async def test_failed_immediate_write_is_swallowed(self, recording_store):
        """A store failure is logged, not raised, and not retried."""
        recording_store.fail_one = 1
        service = AuditService(recording_store)
        event = create_audit_event(action=AuditAction.SYSTEM_ERROR, status=AuditStatus.ERROR)

        await service.submit(event)

        assert recording_store.single_writes == []
        assert service.pending_count == 0

    @pytest.mark.asyncio
    async def test_immediate_write_timeout_is_swallowed(self, recording_store):
        async def hang(event):
            await asyncio.sleep(10)

        recording_store.insert_one = hang
        service = AuditService(recording_store, write_timeout_s=0.01)

        await service.submit(
            create_audit_event(action=AuditAction.SYSTEM_ERROR, status=AuditStatus.ERROR)
        )

        assert recording_store.events == []


class TestBatchedWrites:
    """Events below the immediate threshold are buffered."""

    @pytest.mark.asyncio
    async def test_flush_on_batch_size(self, recording_store):
        """99 events stay pending; the 100th flushes all of them at once."""
        service = AuditService(recording_store, batch_size=100, batch_timeout_ms=60_000)
        events = [_medium_event() for _ in range(100)]

        for event in events[:99]:
            await service.submit(event)

        assert recording_store.events == []
        assert service.pending_count == 99
        assert service.timer_armed is True

        await service.submit(events[99])

        assert recording_store.batches == [events]
        assert service.pending_count == 0
        assert service.timer_armed is False

    @pytest.mark.asyncio
    async def test_flush_on_timer(self, recording_store):
        service = AuditService(recording_store, batch_size=100, batch_timeout_ms=20)
        events = [_medium_event() for _ in range(3)]

        for event in events:
            await service.submit(event)
        assert recording_store.events == []

        await asyncio.sleep(0.1)

        assert recording_store.batches == [events]
        assert service.pending_count == 0
        assert service.timer_armed is False

    @pytest.mark.asyncio
    async def test_single_timer_per_batch(self, recording_store):
        service = AuditService(recording_store, batch_size=100, batch_timeout_ms=60_000)

        await service.submit(_medium_event())
        first_timer = service._timer
        await service.submit(_medium_event())

        assert service._timer is first_timer
        await service.drain()

    @pytest.mark.asyncio
    async def test_below_min_priority_dropped(self, recording_store):
        service = AuditService(recording_store, min_priority=AuditPriority.MEDIUM)
        low = create_audit_event(
            action=AuditAction.API_REQUEST,
            status=AuditStatus.SUCCESS,
            priority=AuditPriority.LOW,
        )

        await service.submit(low)

        assert service.pending_count == 0

    @pytest.mark.asyncio
    async def test_disabled_service_ignores_everything(self, recording_store):
        service = AuditService(recording_store, enabled=False)

        await service.submit(
            create_audit_event(action=AuditAction.SYSTEM_ERROR, status=AuditStatus.ERROR)
        )
        await service.submit(_medium_event())
        service.submit_nowait(_medium_event())

        assert recording_store.events == []
        assert service.pending_count == 0

    @pytest.mark.asyncio
    async def test_flush_with_nothing_pending(self, recording_store):
        service = AuditService(recording_store)

        assert await service.flush() == 0
        assert recording_store.batches == []

    @pytest.mark.asyncio
    async def test_submit_never_raises(self, recording_store):
        service = AuditService(recording_store)

        with patch.object(service, "_arm_timer", side_effect=RuntimeError("broken timer")):
            await service.submit(_medium_event())


class TestBatchRetry:
    """A failed batch is re-queued once, then dropped."""

    @pytest.mark.asyncio
    async def test_failed_batch_requeued_at_front(self, recording_store):
        recording_store.fail_many = 1
        service = AuditService(recording_store, batch_size=100, batch_timeout_ms=60_000)
        failed = [_medium_event() for _ in range(2)]
        for event in failed:
            await service.submit(event)

        assert await service.flush() == 0
        assert service.pending_count == 2
        assert service.timer_armed is True

        later = _medium_event()
        await service.submit(later)
        assert await service.flush() == 3

        assert recording_store.batches == [failed + [later]]

    @pytest.mark.asyncio
    async def test_batch_dropped_after_second_failure(self, recording_store):
        recording_store.fail_many = 2
        service = AuditService(recording_store, batch_size=100, batch_timeout_ms=60_000)
        await service.submit(_medium_event())

        await service.flush()
        await service.flush()

        assert service.pending_count == 0
        assert recording_store.events == []

    @pytest.mark.asyncio
    async def test_flush_never_raises(self, recording_store):
        recording_store.fail_many = 5
        service = AuditService(recording_store, batch_size=1)

        await service.submit(_medium_event())

        assert recording_store.events == []
        await service.drain()


class TestSubmitNowait:
    @pytest.mark.asyncio
    async def test_runs_in_background(self, recording_store):
        service = AuditService(recording_store, batch_size=1)
        event = _medium_event()

        service.submit_nowait(event)
        await asyncio.sleep(0.05)

        assert recording_store.batches == [[event]]

    def test_without_running_loop_drops_event(self, recording_store):
        service = AuditService(recording_store)

        service.submit_nowait(_medium_event())

        assert service.pending_count == 0


class TestDrain:
    """Tests for drain() at shutdown."""

    @pytest.mark.asyncio
    async def test_flushes_pending_and_background(self, recording_store):
        service = AuditService(recording_store, batch_size=100, batch_timeout_ms=60_000)
        queued = _medium_event()
        background = _medium_event()
        await service.submit(queued)
        service.submit_nowait(background)

        await service.drain()

        assert {e.event_id for e in recording_store.events} == {
            queued.event_id,
            background.event_id,
        }
        assert service.pending_count == 0
        assert service.timer_armed is False

    @pytest.mark.asyncio
    async def test_retries_batch_that_fails_once(self, recording_store):
        recording_store.fail_many = 1
        service = AuditService(recording_store, batch_size=100, batch_timeout_ms=60_000)
        event = _medium_event()
        await service.submit(event)

        await service.drain()

        assert recording_store.batches == [[event]]

    @pytest.mark.asyncio
    async def test_is_idempotent(self, recording_store):
        service = AuditService(recording_store)
        await service.submit(_medium_event())

        await service.drain()
        await service.drain()

        assert len(recording_store.batches) == 1

    @pytest.mark.asyncio
    async def test_bounded_by_drain_timeout(self, recording_store):
        async def hang(events):
            await asyncio.sleep(10)

        recording_store.insert_many = hang
        service = AuditService(
            recording_store, write_timeout_s=5.0, drain_timeout_s=0.05
        )
        await service.submit(_medium_event())

        await asyncio.wait_for(service.drain(), timeout=1.0)

        assert service.timer_armed is False
