"""Audit system initialization.

This module owns the process-wide AuditService and the retention
scheduler. The service is created once at startup, injected into the
collaborators that emit events, and drained at shutdown.

Usage:
    from src.audit.setup import init_audit_service, shutdown_audit_service

    # During startup:
    await verify_audit_store(async_session)
    service = init_audit_service(settings, async_session)

    # Anywhere a request-independent emitter needs it:
    service = get_audit_service()
    if service:
        service.submit_nowait(system_event(AuditAction.SYSTEM_WARNING, {"reason": "disk"}))

    # During shutdown:
    await shutdown_audit_service()
"""

import logging
from typing import TYPE_CHECKING, Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from src.audit.config import parse_min_priority
from src.audit.errors import AuditConfigError
from src.audit.query import AuditQueryService
from src.audit.repository import SqlAuditStore
from src.audit.service import AuditService
from src.config import Settings

if TYPE_CHECKING:
    from src.session.manager import SessionManager

logger = logging.getLogger(__name__)

_audit_service: AuditService | None = None
_scheduler: AsyncIOScheduler | None = None


def init_audit_service(settings: Settings, session_factory: Any) -> AuditService:
    """Create the global AuditService from settings.

    Args:
        settings: Application settings
        session_factory: Factory producing AsyncSession instances

    Returns:
        Configured AuditService instance

    Raises:
        AuditConfigError: If a setting is out of range or the log level is unknown
    """
    global _audit_service

    if settings.audit_retention_days < 0:
        raise AuditConfigError(
            f"audit_retention_days must be >= 0, got {settings.audit_retention_days}"
        )
    if not 0 <= settings.audit_cleanup_hour <= 23:
        raise AuditConfigError(
            f"audit_cleanup_hour must be between 0 and 23, got {settings.audit_cleanup_hour}"
        )

    _audit_service = AuditService(
        SqlAuditStore(session_factory),
        enabled=settings.audit_logging_enabled,
        min_priority=parse_min_priority(settings.audit_log_level),
        batch_size=settings.audit_log_batch_size,
        batch_timeout_ms=settings.audit_log_batch_timeout_ms,
        write_timeout_s=settings.audit_store_write_timeout_s,
        drain_timeout_s=settings.audit_drain_timeout_s,
    )
    logger.info(
        "AuditService initialized (enabled=%s, batch_size=%d, batch_timeout_ms=%d)",
        settings.audit_logging_enabled,
        settings.audit_log_batch_size,
        settings.audit_log_batch_timeout_ms,
    )
    return _audit_service


def get_audit_service() -> AuditService | None:
    """Get the global audit service instance.

    Returns:
        The initialized AuditService, or None if not yet initialized.
        Callers should check for None before using.
    """
    return _audit_service


async def shutdown_audit_service() -> None:
    """Drain and forget the global audit service. Safe to call twice."""
    global _audit_service

    if _audit_service is None:
        return
    await _audit_service.drain()
    _audit_service = None
    logger.info("AuditService shut down")


async def verify_audit_store(session_factory: Any) -> None:
    """Check that the audit store is reachable.

    Raises:
        AuditConfigError: If the store cannot be queried
    """
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        raise AuditConfigError(f"Audit store unreachable: {e}") from e


async def run_retention_cleanup(
    retention_days: int,
    session_factory: Any,
    session_manager: "SessionManager | None" = None,
) -> int:
    """Delete expired audit records, then purge expired sessions.

    Returns:
        Number of audit records deleted
    """
    async with session_factory() as session:
        deleted = await AuditQueryService(session).cleanup(retention_days)

    if session_manager is not None:
        await session_manager.cleanup_expired()
    return deleted


async def _run_retention_job(
    retention_days: int,
    session_factory: Any,
    session_manager: "SessionManager | None",
) -> None:
    """Scheduled job: audit retention and session cleanup."""
    try:
        await run_retention_cleanup(retention_days, session_factory, session_manager)
    except Exception:
        logger.exception("Audit retention cleanup failed")


def start_retention_scheduler(
    settings: Settings,
    session_factory: Any,
    session_manager: "SessionManager | None" = None,
) -> AsyncIOScheduler | None:
    """Schedule the daily retention job when audit_cleanup_enabled is set.

    Returns:
        The running scheduler, or None when cleanup is disabled
    """
    global _scheduler

    if not settings.audit_cleanup_enabled:
        return None

    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        _run_retention_job,
        CronTrigger(hour=settings.audit_cleanup_hour, minute=0),
        args=[settings.audit_retention_days, session_factory, session_manager],
        id="audit_retention_cleanup",
        name="Delete audit logs past retention",
    )
    _scheduler.start()
    logger.info(
        "Audit retention job scheduled daily at %02d:00 (%d days)",
        settings.audit_cleanup_hour,
        settings.audit_retention_days,
    )
    return _scheduler


def stop_retention_scheduler() -> None:
    global _scheduler

    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
