# backend/src/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from src.api.audit import router as audit_router
from src.api.session import router as session_router
from src.audit.factory import system_event
from src.audit.middleware import AuditMiddleware, default_interceptors
from src.audit.models import AuditAction
from src.audit.setup import (
    get_audit_service,
    init_audit_service,
    shutdown_audit_service,
    start_retention_scheduler,
    stop_retention_scheduler,
    verify_audit_store,
)
from src.config import settings
from src.db.database import async_session
from src.session.setup import init_sessions, reset_sessions

logger = logging.getLogger(__name__)

APP_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # Startup
    await verify_audit_store(async_session)
    audit = init_audit_service(settings, async_session)
    session_manager = init_sessions(settings, audit)
    start_retention_scheduler(settings, async_session, session_manager)
    await audit.submit(system_event(AuditAction.SYSTEM_STARTUP, {"version": APP_VERSION}))
    logger.info("Land audit service started")
    yield
    # Shutdown
    stop_retention_scheduler()
    await audit.submit(system_event(AuditAction.SYSTEM_SHUTDOWN, {"version": APP_VERSION}))
    await shutdown_audit_service()
    reset_sessions()


app = FastAPI(title="Land Audit", version=APP_VERSION, lifespan=lifespan)

app.add_middleware(
    AuditMiddleware,
    interceptors=default_interceptors(),
    service_getter=get_audit_service,
)

# Include routers
app.include_router(audit_router)
app.include_router(session_router)


@app.get("/health")
async def health():
    return {"status": "healthy"}
