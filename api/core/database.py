"""
Async engine and sessions for the credit ledger store

Credit writes run in their own short transactions (see CreditService), so a
request-scoped session only ever commits work that already succeeded.
"""
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from core.config import settings
from database.models import Base

# asyncpg driver for plain postgresql:// URLs
DATABASE_URL = settings.database_url.replace("postgresql://", "postgresql+asyncpg://")

_connect_args = {}
if DATABASE_URL.startswith("postgresql+asyncpg://"):
    # Bounds every ledger statement, webhook writes included
    _connect_args = {"server_settings": {"statement_timeout": str(settings.database_statement_timeout_ms)}}

engine = create_async_engine(
    DATABASE_URL,
    echo=settings.debug,
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
    pool_pre_ping=True,
    connect_args=_connect_args,
)

AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables():
    """Create profiles, credit_transactions and payment_customers if missing"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_db_session():
    """Session that commits on success and rolls back on any error"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def get_db():
    async with get_db_session() as session:
        yield session
