"""
Engine and session factory.

SQLite (aiosqlite) shares one connection through StaticPool, so every
session in the process sees the same database; services serialize their
critical sections with in-process locks. PostgreSQL (asyncpg) gets a
regular connection pool.
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from app.config import settings
from app.db.models import Base

IS_SQLITE = settings.database_url.startswith("sqlite")

if IS_SQLITE:
    engine = create_async_engine(
        settings.database_url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=settings.debug,
    )
else:
    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
    )

# Objects stay readable after commit; services return them to routers
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncSession:
    """FastAPI dependency yielding a request-scoped session"""
    async with async_session_maker() as session:
        yield session


async def init_db():
    """Create any missing tables (development and tests; production runs Alembic)"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db():
    """Drop every table (tests only)"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def dispose_db():
    """Close pooled connections on shutdown"""
    await engine.dispose()
