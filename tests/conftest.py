"""Shared pytest fixtures for Vettly tests.

The application reads its settings at import time, so the environment is
pointed at an in-memory SQLite database before anything from ``app`` is
imported.
"""
import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CLOUD_SQL_USE_UNIX_SOCKET"] = "false"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["GEMINI_API_KEY"] = "test-key"
os.environ["STRIPE_API_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["LOG_LEVEL"] = "WARNING"

import json
import uuid
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from fakeredis import aioredis as fake_aioredis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401  registers every table on Base.metadata
from app.database import Base
from app.models.user import User
from app.services.compatibility_service import CompatibilityService
from app.services.decline_analytics_service import DeclineAnalyticsService
from app.services.explanation_monitoring_service import ExplanationMonitoringService
from app.services.explanation_service import ExplanationService
from app.services.match_approval_service import MatchApprovalService
from app.services.notification_service import NotificationService
from app.services.tip_service import TipService


# ── Questionnaire data ───────────────────────────────────────────────────────

@pytest.fixture
def full_answers():
    """Every scored question answered, plus the fields explanations read."""
    return {
        "values_religion": "spiritual",
        "values_politics": "moderate",
        "values_family": "very_important",
        "values_career": "balanced",
        "values_education": "university",
        "lifestyle_activity": "active",
        "lifestyle_socializing": "small_groups",
        "lifestyle_travel": "often",
        "lifestyle_spending": "saver",
        "lifestyle_cleanliness": "tidy",
        "emotional_communication": "direct",
        "emotional_conflict": "discuss",
        "emotional_support": "listen",
        "emotional_independence": "balanced",
        "emotional_expression": "open",
        "love_physical": "high",
        "love_gifts": "low",
        "love_service": "medium",
        "love_quality": "high",
        "love_affirmation": "medium",
        "attraction_physical": "important",
        "attraction_intellectual": "very_important",
        "attraction_emotional": "very_important",
        "values_children": "I want children",
        "values_marriage": "I want to get married",
        "relationships_children": "want",
        "lifestyle_profession": "Engineer",
        "lifestyle_smoking": "Never",
        "lifestyle_alcohol": "Socially",
        "lifestyle_hobbiesTypes": ["hiking", "cooking"],
        "attraction_height": "any",
        "personal_maritalStatus": "single",
        "personal_age": 32,
        "personal_dob": "01.02.1993",
        "personal_educationLevel": "bachelor",
        "personal_religion": "none",
        "values_familyImportance": "high",
    }


@pytest.fixture
def llm_payload():
    """A well-formed model response with five points per member."""
    return json.dumps({
        "member1Explanation": [
            {"header": f"Point {i}", "explanation": f"Reason {i} he will enjoy her company."}
            for i in range(1, 6)
        ],
        "member2Explanation": [
            {"header": f"Point {i}", "explanation": f"Reason {i} she will enjoy his company."}
            for i in range(1, 6)
        ],
    })


# ── Database ─────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Sessions on a file-backed database, each with its own connection.

    Used where two sessions must hold separate transactions at once.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'vettly.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(db_session, full_answers):
    """Factory: ``await make_user(gender="FEMALE", questionnaire_answers={...})``."""

    async def _make(**overrides) -> User:
        suffix = uuid.uuid4().hex[:8]
        fields = {
            "id": uuid.uuid4(),
            "email": f"member-{suffix}@example.com",
            "first_name": f"Member{suffix[:4]}",
            "last_name": "Tester",
            "role": "member",
            "gender": "MALE",
            "dob": "01.02.1993",
            "age": 32,
            "location": "Sydney",
            "state": "NSW",
            "suburb": "Newtown",
            "marital_status": "single",
            "has_children": "no",
            "profile_photo_url": None,
            "questionnaire_answers": dict(full_answers),
            "questionnaire_completed": True,
            "has_completed_first_virtual_meeting": False,
            "is_active": True,
        }
        fields.update(overrides)
        user = User(**fields)
        db_session.add(user)
        await db_session.flush()
        return user

    return _make


@pytest_asyncio.fixture
async def matchmaker(make_user):
    return await make_user(role="matchmaker", first_name="Grace", last_name="Hopper", gender="FEMALE")


# ── Services ─────────────────────────────────────────────────────────────────

@pytest.fixture
def explanation_service(llm_payload):
    """ExplanationService whose model chain returns ``llm_payload``."""
    service = ExplanationService()
    service._call_model_chain = AsyncMock(return_value=(llm_payload, "gemini-test", 321))
    return service


@pytest.fixture
def approval_service(explanation_service):
    return MatchApprovalService(
        compatibility_service=CompatibilityService(),
        notification_service=NotificationService(),
        decline_analytics_service=DeclineAnalyticsService(),
        explanation_service=explanation_service,
        monitoring_service=ExplanationMonitoringService(),
    )


@pytest_asyncio.fixture
async def fake_redis():
    client = fake_aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def tip_service(fake_redis):
    return TipService(redis=fake_redis)


# ── HTTP client ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def client(session_factory, approval_service, tip_service):
    """AsyncClient over the app with the database and services overridden.

    The lifespan is not run, so no real Postgres, Redis or scheduler is
    touched.
    """
    from app.api import deps
    from app.database import get_db, session_scope
    from app.main import app

    async def _get_db():
        async with session_scope(session_factory) as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[deps.get_approval_service] = lambda: approval_service
    app.dependency_overrides[deps.get_tip_service] = lambda: tip_service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http

    app.dependency_overrides.clear()
