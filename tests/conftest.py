"""
Test fixtures for the BoxPulse retention engine.

Provides:
- Async DB engine per test (file-backed SQLite with SAVEPOINT support)
- Box / coach / athlete fixtures
- JWT tokens for the coach-facing API
"""

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set before boxpulse.config is imported anywhere
os.environ["ENVIRONMENT"] = "testing"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["NOTIFICATION_WEBHOOK_URL"] = ""

from boxpulse.db.engine import Base  # noqa: E402
from boxpulse.db.models import Box, Membership  # noqa: E402
from tests.helpers import create_box, create_member, make_token  # noqa: E402


@pytest_asyncio.fixture
async def engine(tmp_path):
    """
    Fresh database per test.

    pysqlite's own transaction handling breaks SAVEPOINT, so BEGIN is
    emitted by SQLAlchemy instead. WAL lets sweep sessions write while a
    test session holds a read transaction.
    """
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'boxpulse.db'}", echo=False)

    @event.listens_for(eng.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(eng.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a clean DB session per test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ── Box & Membership Fixtures ──────────────────────────────────────────


@pytest_asyncio.fixture
async def box(session_factory) -> Box:
    return await create_box(session_factory, "Ironworks")


@pytest_asyncio.fixture
async def other_box(session_factory) -> Box:
    return await create_box(session_factory, "Foundry")


@pytest_asyncio.fixture
async def coach(session_factory, box) -> Membership:
    return await create_member(session_factory, box, "coach")


@pytest_asyncio.fixture
async def second_coach(session_factory, box) -> Membership:
    return await create_member(session_factory, box, "head_coach")


@pytest_asyncio.fixture
async def athlete(session_factory, box, coach) -> Membership:
    """An athlete assigned to `coach`."""
    return await create_member(session_factory, box, "athlete", coach=coach)


@pytest_asyncio.fixture
async def second_athlete(session_factory, box) -> Membership:
    """An athlete with no assigned coach."""
    return await create_member(session_factory, box, "athlete")


@pytest_asyncio.fixture
async def other_box_coach(session_factory, other_box) -> Membership:
    return await create_member(session_factory, other_box, "coach")


# ── JWT Token Fixtures ─────────────────────────────────────────────────


@pytest.fixture
def coach_token(coach) -> str:
    return make_token(coach)


@pytest.fixture
def second_coach_token(second_coach) -> str:
    return make_token(second_coach)


@pytest.fixture
def other_box_token(other_box_coach) -> str:
    return make_token(other_box_coach)
