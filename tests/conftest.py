"""Pytest configuration and fixtures."""

import os
import tempfile
from typing import AsyncGenerator

# Configure the app for tests before anything reads settings
os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = (
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'studygen-test.db')}"
)
os.environ["REDIS_URL"] = "redis://localhost:6399/0"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["RATE_LIMIT_STORAGE_URI"] = "memory://"
os.environ["SECRET_KEY"] = "test-admin-key"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fakes import FakeLLMClient
from studygen.auth.identity import CallerIdentity
from studygen.config import Settings
from studygen.db import models  # noqa: F401
from studygen.db.models import Plan
from studygen.db.session import Base, get_db
from studygen.main import app
from studygen.services.study_service import StudyGuideService, get_study_service


@pytest.fixture
def settings() -> Settings:
    return Settings(
        poll_interval_seconds=0.01,
        poll_timeout_seconds=5.0,
        keepalive_interval_seconds=0.5,
    )


async def create_test_engine(path, begin: str = "BEGIN"):
    """SQLite engine for one test database; ``begin`` is the statement opening each transaction."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}", echo=False)

    # pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql(begin)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return engine


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Create a per-test SQLite database."""
    engine = await create_test_engine(tmp_path / "test.db")
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def concurrent_session_factory(tmp_path):
    """
    Sessions for tests that run several handlers at once.

    SQLite refuses, without waiting, a write from a transaction that has
    already read while another connection holds the write lock. BEGIN
    IMMEDIATE takes the lock up front so concurrent transactions queue.
    """
    engine = await create_test_engine(tmp_path / "concurrent.db", begin="BEGIN IMMEDIATE")
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def llm() -> FakeLLMClient:
    return FakeLLMClient(provider="primary")


@pytest.fixture
def fallback_llm() -> FakeLLMClient:
    return FakeLLMClient(provider="fallback")


@pytest_asyncio.fixture
async def service(session_factory, llm, fallback_llm, settings) -> AsyncGenerator[StudyGuideService, None]:
    study_service = StudyGuideService(session_factory, [llm, fallback_llm], settings)
    yield study_service
    await study_service.wait_idle()


@pytest.fixture
def user() -> CallerIdentity:
    return CallerIdentity.user("user-1", Plan.PLUS.value)


@pytest.fixture
def other_user() -> CallerIdentity:
    return CallerIdentity.user("user-2", Plan.PLUS.value)


@pytest_asyncio.fixture
async def client(session_factory, service) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_study_service] = lambda: service

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def api_key(session_factory) -> tuple[str, str]:
    """Create a test API key."""
    from studygen.auth.security import create_api_key

    async with session_factory() as db:
        api_key_model, full_key = await create_api_key(
            db,
            name="Test Key",
            user_id="api-user",
            plan=Plan.PLUS,
        )
        await db.commit()

    return api_key_model.id, full_key


@pytest_asyncio.fixture
async def auth_headers(api_key: tuple[str, str]) -> dict:
    """Get auth headers with test API key."""
    _, full_key = api_key
    return {"Authorization": f"Bearer {full_key}"}


@pytest.fixture
def session_headers() -> dict:
    return {"X-Session-Id": "anon-session-0001"}
