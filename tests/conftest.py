import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from fastapi import Depends
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import leaselogix.models  # noqa: F401 register every table
from leaselogix.api import deps
from leaselogix.core.config import get_settings
from leaselogix.core.db import enable_sqlite_savepoints, get_db
from leaselogix.main import app
from leaselogix.middleware.security import limiter
from leaselogix.models.base import Base
from leaselogix.services.invitation_service import InvitationService

from tests.factories import RecordingEmailService, RecordingSMSSender


@pytest.fixture
def settings():
    # Zero backoff keeps retry tests fast
    return get_settings().model_copy(update={"transport_backoff_seconds": 0.0})


@pytest.fixture
async def engine():
    test_engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    enable_sqlite_savepoints(test_engine)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def mailbox():
    return RecordingEmailService()


@pytest.fixture
def sms():
    return RecordingSMSSender()


@pytest.fixture
def invitations(db, settings, mailbox, sms):
    return InvitationService(db, settings=settings, email_service=mailbox, sms_sender=sms)


@pytest.fixture
async def client(session_factory, settings, mailbox, sms):
    async def _get_db():
        async with session_factory() as session:
            yield session

    async def _invitation_service(db: AsyncSession = Depends(get_db)) -> InvitationService:
        return InvitationService(db, settings=settings, email_service=mailbox, sms_sender=sms)

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[deps.get_invitation_service] = _invitation_service
    limiter.reset()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
