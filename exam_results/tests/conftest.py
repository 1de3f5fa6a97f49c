"""
Shared fixtures for the results engine tests.

Every test gets a fresh in-memory SQLite database. StaticPool keeps a single
connection so all sessions built from the factory see the same data.
"""
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from exam_results.orm import Base
from exam_results.security.rbac import CallerIdentity, Role
from exam_results.services import ranking_engine, score_aggregator
from exam_results.tests.factories import ExamFixture, create_exam_session, create_candidate_attempt


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# =============================================================================
# Database
# =============================================================================

@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def reset_locks():
    """Lock registries are process-wide; each test runs on its own loop."""
    score_aggregator._attempt_locks.clear()
    ranking_engine._session_locks.clear()
    yield
    score_aggregator._attempt_locks.clear()
    ranking_engine._session_locks.clear()


# =============================================================================
# Callers
# =============================================================================

@pytest.fixture
def controller() -> CallerIdentity:
    return CallerIdentity(user_id=900, role=Role.EXAM_CONTROLLER)


@pytest.fixture
def super_admin() -> CallerIdentity:
    return CallerIdentity(user_id=901, role=Role.SUPER_ADMIN)


# =============================================================================
# Seed data
# =============================================================================

@pytest_asyncio.fixture
async def exam(db: AsyncSession) -> ExamFixture:
    """Candidate answers "A" (correct) and "B" (wrong) and uploads one written answer."""
    ids = await create_exam_session(db)
    attempt = await create_candidate_attempt(
        db,
        ids["exam_session_id"],
        answers={ids["mcq_a_id"]: "A", ids["mcq_b_id"]: "B"},
        written_question_ids=[ids["written_id"]],
    )
    await db.commit()

    return ExamFixture(
        exam_session_id=ids["exam_session_id"],
        mcq_a_id=ids["mcq_a_id"],
        mcq_b_id=ids["mcq_b_id"],
        written_id=ids["written_id"],
        cognitive_id=ids["cognitive_id"],
        candidate_id=attempt["candidate_id"],
        attempt_id=attempt["attempt_id"],
        written_response_id=attempt["written_response_ids"][0],
    )


@pytest.fixture
def candidate_caller(exam: ExamFixture) -> CallerIdentity:
    return CallerIdentity(user_id=500, role=Role.CANDIDATE, candidate_id=exam.candidate_id)
