"""Session system initialization.

Holds the process-wide session store, validator and manager. Call
init_sessions() during startup (after the audit service, so that session
events are recorded) and use the getters elsewhere.
"""

import logging
from datetime import timedelta

from src.audit.service import AuditService
from src.config import Settings
from src.session.manager import SessionManager
from src.session.store import InMemorySessionStore
from src.session.validator import SessionValidator

logger = logging.getLogger(__name__)

_session_store: InMemorySessionStore | None = None
_session_validator: SessionValidator | None = None
_session_manager: SessionManager | None = None


def init_sessions(settings: Settings, audit: AuditService | None) -> SessionManager:
    """Create the session store, validator and manager.

    Args:
        settings: Application settings (max age and warning window)
        audit: Audit service receiving session events, or None

    Returns:
        The SessionManager
    """
    global _session_store, _session_validator, _session_manager

    max_age = timedelta(seconds=settings.session_max_age_seconds)
    _session_store = InMemorySessionStore(max_age=max_age)
    _session_validator = SessionValidator(
        _session_store,
        audit,
        max_age=max_age,
        warning_after=timedelta(seconds=settings.session_warning_seconds),
    )
    _session_manager = SessionManager(_session_store, audit)
    logger.info("Sessions initialized (max age %ss)", settings.session_max_age_seconds)
    return _session_manager


def get_session_store() -> InMemorySessionStore | None:
    return _session_store


def get_session_validator() -> SessionValidator | None:
    return _session_validator


def get_session_manager() -> SessionManager | None:
    return _session_manager


def reset_sessions() -> None:
    """Forget the session globals (shutdown and tests)."""
    global _session_store, _session_validator, _session_manager
    _session_store = None
    _session_validator = None
    _session_manager = None
