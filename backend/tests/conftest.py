from collections.abc import Sequence

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from src.audit.errors import AuditStoreError
from src.audit.models import AuditEvent
from src.audit.service import AuditService
from src.config import Settings
from src.db.database import Base, get_session
from src.main import app
from src.session.setup import init_sessions, reset_sessions


class RecordingStore:
    """In-memory audit store that records every insert.

    Args:
        fail_many: Number of upcoming insert_many calls that raise
        fail_one: Number of upcoming insert_one calls that raise
    """

    def __init__(self, fail_many: int = 0, fail_one: int = 0):
        self.fail_many = fail_many
        self.fail_one = fail_one
        self.single_writes: list[AuditEvent] = []
        self.batches: list[list[AuditEvent]] = []

    @property
    def events(self) -> list[AuditEvent]:
        persisted = list(self.single_writes)
        for batch in self.batches:
            persisted.extend(batch)
        return persisted

    async def insert_one(self, event: AuditEvent) -> None:
        if self.fail_one > 0:
            self.fail_one -= 1
            raise AuditStoreError("store unavailable", batch_size=1)
        self.single_writes.append(event)

    async def insert_many(self, events: Sequence[AuditEvent]) -> None:
        if self.fail_many > 0:
            self.fail_many -= 1
            raise AuditStoreError("store unavailable", batch_size=len(events))
        self.batches.append(list(events))


@pytest.fixture
def recording_store():
    return RecordingStore()


@pytest_asyncio.fixture
async def session_factory():
    """Session factory over a fresh in-memory SQLite database."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Database session for unit tests (in-memory SQLite)."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def audit_service(recording_store):
    """AuditService over a RecordingStore, installed as the global service."""
    import src.audit.setup as audit_setup

    service = AuditService(recording_store, batch_size=1000, batch_timeout_ms=60_000)
    audit_setup._audit_service = service
    yield service
    await service.drain()
    audit_setup._audit_service = None


@pytest.fixture
def session_manager(audit_service):
    """Global session store, validator and manager wired to audit_service."""
    manager = init_sessions(Settings(), audit_service)
    yield manager
    reset_sessions()


@pytest_asyncio.fixture
async def client(db_session, session_manager):
    """HTTP client with test database and initialized sessions"""

    async def override_get_session():
        yield db_session

    app.dependency_overrides[get_session] = override_get_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def admin_client(client, session_manager):
    """HTTP client carrying the cookie of a signed-in admin."""
    session = await session_manager.sign_in(
        {"id": "admin-1", "email": "admin@example.com", "name": "Admin", "role": "admin"}
    )
    client.cookies.set("sessionId", session.session_id)
    return client
