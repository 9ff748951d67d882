"""
PS Monitor Database Session Management

Async SQLAlchemy engine and session factory.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from core.config import get_settings


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""

    pass


def make_session_factory(database_url: str | None = None):
    """Build an engine + session factory pair for a worker run."""
    settings = get_settings()
    engine = create_async_engine(
        database_url or settings.database_url,
        echo=settings.database_echo,
        pool_pre_ping=True,
    )
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
