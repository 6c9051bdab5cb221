"""
Pytest configuration and fixtures for RoomVibe API tests.
"""
import hashlib
import hmac
import os
import time

# Settings are read at import time
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("LOG_FORMAT", "console")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from core.config import settings
from core.database import get_db
from core.exceptions import BackendNotConfigured, JobNotFound
from database.models import Base, CreditTransaction, Profile
from main import app
from services.endpoint_resolver import BackendResolver, get_generation_backend
from services.generation_backends import GenerationBackend, MockGenerationBackend


def make_token(user_id: str, email: str = None, full_name: str = None, secret: str = None) -> str:
    """Access token shaped like the ones Supabase issues"""
    claims = {
        "sub": user_id,
        "aud": settings.jwt_audience,
        "exp": int(time.time()) + 3600,
        "email": email,
        "user_metadata": {"full_name": full_name} if full_name else {},
    }
    return jwt.encode(claims, secret or settings.supabase_jwt_secret, algorithm=settings.algorithm)


def auth_headers(user_id: str, **kwargs) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, **kwargs)}"}


def stripe_signature(payload: str, secret: str = None, timestamp: int = None) -> str:
    """stripe-signature header value for a payload"""
    timestamp = timestamp or int(time.time())
    secret = secret or settings.stripe_webhook_secret
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest_asyncio.fixture
async def engine(tmp_path):
    """
    File-backed SQLite per test. Transactions start with BEGIN IMMEDIATE so
    writers serialize the way row locks make them on PostgreSQL.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'roomvibe_test.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_backend():
    """Mock generation backend whose jobs finish on the first poll"""
    return MockGenerationBackend(starting_seconds=0.0, processing_seconds=0.0, latency_seconds=0.0)


class OfflineLiveBackend(GenerationBackend):
    """Stands in for the provider-backed backend: knows no jobs, calls nothing"""

    name = "live"

    async def analyze_image(self, image_url):
        raise BackendNotConfigured()

    async def generate_prompt(self, image_url, suggestions):
        raise BackendNotConfigured()

    async def submit_generation_job(self, image_url, prompt):
        raise BackendNotConfigured()

    async def poll_job(self, job_id):
        raise JobNotFound()


@pytest.fixture
def resolver(mock_backend):
    return BackendResolver(
        mock_image_analysis=True, mock_image_generation=True, live=OfflineLiveBackend(), mock=mock_backend
    )


@pytest.fixture
def fast_generation(monkeypatch):
    monkeypatch.setattr(settings, "generation_poll_interval", 0.0)
    monkeypatch.setattr(settings, "credit_write_retry_delay", 0.0)


@pytest.fixture
def test_app(session_factory, resolver, fast_generation):
    """The real app with the test database and mock generation backends"""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_generation_backend] = lambda: resolver
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(test_app):
    async with AsyncClient(transport=ASGITransport(app=test_app), base_url="http://test") as client:
        yield client


async def balance_of(session_factory, user_id: str):
    async with session_factory() as session:
        return await session.scalar(select(Profile.credits).where(Profile.id == user_id))


async def transactions_of(session_factory, user_id: str, kind: str = None):
    async with session_factory() as session:
        query = select(CreditTransaction).where(CreditTransaction.user_id == user_id)
        if kind:
            query = query.where(CreditTransaction.type == kind)
        result = await session.execute(query.order_by(CreditTransaction.created_at))
        return list(result.scalars().all())
