"""
Database connection module
SQLAlchemy async engine and session factory
"""
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from scoredesk.core.config import get_settings
import os

settings = get_settings()

# Make sure the SQLite data directory exists
if settings.database_url.startswith("sqlite+aiosqlite:///") and ":memory:" not in settings.database_url:
    os.makedirs(os.path.dirname(settings.database_url.replace("sqlite+aiosqlite:///", "")) or "./data", exist_ok=True)

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug  # print SQL in debug mode
)

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


class Base(DeclarativeBase):
    """ORM base class"""
    pass


async def get_db() -> AsyncSession:
    """Dependency: yields a database session"""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db():
    """Create tables"""
    # Import models so they register on Base.metadata
    from scoredesk import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
