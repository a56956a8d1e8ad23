"""Database setup and session management."""

from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .config import get_settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


@lru_cache
def get_async_engine():
    """Get asynchronous SQLAlchemy engine for application."""
    settings = get_settings()
    if not settings.db_url:
        raise ValueError("DB_URL not configured")

    # Convert to async driver
    db_url = settings.db_url.replace("postgresql+psycopg://", "postgresql+asyncpg://")
    return create_async_engine(db_url, echo=settings.env == "dev", pool_pre_ping=True)


def get_async_session_factory() -> async_sessionmaker:
    """Get async session factory for the job store, document store and workers.

    Every store operation opens its own short session so a worker pass never
    holds a connection across phases.
    """
    engine = get_async_engine()
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
