"""Audit service with immediate and batched write paths.

This module provides the AuditService class, the batching engine of the
audit core. Events are routed by criticality:

- Immediate (CRITICAL priority or ERROR outcome): single-record insert,
  awaited inside submit() so the record is durable when submit returns
- Batched (everything else): appended to an in-memory pending queue,
  flushed in bulk when batch_size events are pending or batch_timeout
  elapses, whichever comes first

Store failures never reach the caller. Immediate writes get one attempt;
a failed batch is put back at the front of the queue and retried once on
the next flush trigger, then dropped and logged. Delivery is therefore
at-least-once under transient failures and best-effort under a sustained
store outage.
"""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from src.audit.config import is_immediate_write
from src.audit.errors import AuditConfigError
from src.audit.models import AuditEvent, AuditPriority

logger = logging.getLogger(__name__)


class AuditStore(Protocol):
    """Durable append store for audit events."""

    async def insert_one(self, event: AuditEvent) -> None: ...

    async def insert_many(self, events: Sequence[AuditEvent]) -> None: ...


@dataclass
class _PendingEvent:
    event: AuditEvent
    failed_attempts: int = 0


class AuditService:
    """Batching engine for audit events.

    The pending queue is the only shared mutable state. Appending to it
    and swapping it out for a flush never await, so on the event loop
    they cannot interleave; the flush lock keeps bulk inserts in order.

    Args:
        store: Durable store receiving inserts
        enabled: Master switch; when False every submission is ignored
        min_priority: Batched events below this priority are dropped
        batch_size: Pending count that triggers an immediate flush
        batch_timeout_ms: Delay before a timer-triggered flush
        write_timeout_s: Timeout applied to every store write
        drain_timeout_s: Upper bound on drain() at shutdown
        max_batch_retries: Times a failed batch is re-queued

    Example:
        >>> service = AuditService(store=SqlAuditStore(async_session))
        >>> await service.submit(system_event(AuditAction.SYSTEM_STARTUP))
        >>> await service.drain()
    """

    def __init__(
        self,
        store: AuditStore,
        *,
        enabled: bool = True,
        min_priority: AuditPriority = AuditPriority.LOW,
        batch_size: int = 100,
        batch_timeout_ms: int = 5000,
        write_timeout_s: float = 5.0,
        drain_timeout_s: float = 10.0,
        max_batch_retries: int = 1,
    ) -> None:
        if batch_size <= 0:
            raise AuditConfigError(f"batch_size must be positive, got {batch_size}")
        if batch_timeout_ms <= 0:
            raise AuditConfigError(f"batch_timeout_ms must be positive, got {batch_timeout_ms}")
        if write_timeout_s <= 0:
            raise AuditConfigError(f"write_timeout_s must be positive, got {write_timeout_s}")

        self._store = store
        self._enabled = enabled
        self._min_priority = min_priority
        self._batch_size = batch_size
        self._batch_timeout = batch_timeout_ms / 1000
        self._write_timeout = write_timeout_s
        self._drain_timeout = drain_timeout_s
        self._max_batch_retries = max_batch_retries

        self._pending: list[_PendingEvent] = []
        self._timer: asyncio.Task | None = None
        self._flush_lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def submit(self, event: AuditEvent) -> None:
        """Record an event. Never raises.

        Immediate events are written before this returns. Batched events
        are queued, and the queue is flushed here if it reached batch_size.

        Args:
            event: The audit event to record
        """
        if not self._enabled:
            return

        try:
            if is_immediate_write(event.priority, event.status):
                await self._write_immediate(event)
                return

            if event.priority.rank < self._min_priority.rank:
                return

            self._pending.append(_PendingEvent(event))
            if len(self._pending) >= self._batch_size:
                await self.flush()
            else:
                self._arm_timer()
        except Exception:
            logger.exception("Audit logging error for %s", event.action.value)

    def submit_nowait(self, event: AuditEvent) -> None:
        """Schedule submit() as a background task and return immediately.

        Used on the response path. Tasks are tracked so drain() waits for
        them. Without a running event loop the event is dropped and logged.

        Args:
            event: The audit event to record
        """
        if not self._enabled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error("No running event loop; audit event %s dropped", event.action.value)
            return
        task = loop.create_task(self.submit(event))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _write_immediate(self, event: AuditEvent) -> None:
        try:
            await asyncio.wait_for(self._store.insert_one(event), timeout=self._write_timeout)
        except Exception:
            logger.exception(
                "Error saving audit log %s (%s)", event.event_id, event.action.value
            )

    def _arm_timer(self) -> None:
        if self.timer_armed:
            return
        self._timer = asyncio.get_running_loop().create_task(self._flush_after_timeout())

    def _disarm_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

    async def _flush_after_timeout(self) -> None:
        await asyncio.sleep(self._batch_timeout)
        self._timer = None
        await self.flush()

    async def flush(self) -> int:
        """Bulk-insert everything pending. Never raises.

        Returns:
            Number of events persisted by this flush
        """
        self._disarm_timer()
        async with self._flush_lock:
            if not self._pending:
                return 0

            batch, self._pending = self._pending, []
            try:
                await asyncio.wait_for(
                    self._store.insert_many([item.event for item in batch]),
                    timeout=self._write_timeout,
                )
            except Exception:
                logger.exception("Error flushing audit logs batch of %d", len(batch))
                self._requeue(batch)
                return 0

            logger.debug("Flushed %d audit events", len(batch))
            return len(batch)

    def _requeue(self, batch: list[_PendingEvent]) -> None:
        retry: list[_PendingEvent] = []
        for item in batch:
            item.failed_attempts += 1
            if item.failed_attempts <= self._max_batch_retries:
                retry.append(item)

        dropped = len(batch) - len(retry)
        if dropped:
            logger.error("Dropped %d audit events after repeated store failures", dropped)

        if retry:
            self._pending[:0] = retry
            logger.warning("Re-queued %d audit events for retry", len(retry))
            self._arm_timer()

    async def drain(self) -> None:
        """Flush pending events and wait for background submissions.

        Called at shutdown. Bounded by drain_timeout_s; safe to call
        repeatedly and with nothing pending.
        """
        try:
            await asyncio.wait_for(self._drain(), timeout=self._drain_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Audit drain timed out after %.1fs with %d events pending",
                self._drain_timeout,
                len(self._pending),
            )
        finally:
            self._disarm_timer()

    async def _drain(self) -> None:
        self._disarm_timer()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

        await self.flush()
        if self._pending:
            # One more pass for a batch re-queued by the flush above
            await self.flush()

        self._disarm_timer()
        if self._pending:
            logger.error("%d audit events could not be persisted at shutdown", len(self._pending))
