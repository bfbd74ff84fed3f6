from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from mfa_engine.core.config import settings

engine_options: dict[str, Any] = {"future": True, "echo": settings.DEBUG}
if settings.POSTGRES_URL.startswith("postgresql"):
    engine_options.update(
        pool_size=settings.POSTGRES_POOL_SIZE,
        max_overflow=settings.POSTGRES_MAX_OVERFLOW,
    )

# Create engine for PostgreSQL
engine = create_async_engine(settings.POSTGRES_URL, **engine_options)

# Async session factory
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    pass
