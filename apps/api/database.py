"""
Async SQLAlchemy engine, session factory and declarative base.
"""

from typing import AsyncGenerator, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import async_database_url, settings


engine = create_async_engine(async_database_url(settings.DATABASE_URL), pool_pre_ping=True)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()

_schema_ready: Set[str] = set()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a request-scoped session."""
    async with async_session_maker() as session:
        yield session


async def ensure_schema(session_factory: Optional[async_sessionmaker] = None) -> bool:
    """Create missing tables once per database bind.

    Returns True when this call ran the DDL, False when the bind was already
    verified by this process.
    """
    import models  # noqa: F401

    factory = session_factory or async_session_maker
    bind = factory.kw.get("bind") or engine
    key = str(bind.url)
    if key in _schema_ready:
        return False
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    _schema_ready.add(key)
    return True
