"""Async SQLAlchemy engine, session factory and declarative base."""
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from metering.config import settings


def _engine_options(database_url: str) -> dict:
    options = {"echo": settings.debug, "pool_pre_ping": True}
    # SQLite (local runs, tests) has no connection pool to size
    if make_url(database_url).get_backend_name() != "sqlite":
        options.update(pool_size=settings.db_pool_size, max_overflow=settings.db_max_overflow)
    return options


engine = create_async_engine(settings.database_url, **_engine_options(settings.database_url))

# Sessions never expire loaded objects on commit; detached jobs keep using them
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

Base = declarative_base()
