"""
Database Connection Module
Handles PostgreSQL connection using SQLAlchemy async engine.

Every operation that must be atomic receives the AsyncSession explicitly
and runs inside ``unit_of_work(session)``; there is no module-level
connection the services reach for on their own.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import Table
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from takeaway.core.config import get_settings

settings = get_settings()


def _connect_args() -> dict:
    # Slow queries are killed server-side and surface as retryable errors
    if settings.is_postgres:
        return {"options": f"-c statement_timeout={settings.db_statement_timeout_ms}"}
    return {}


def build_engine(url: str):
    """Create an async engine for the given URL."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=settings.db_echo)
    return create_async_engine(
        url,
        echo=settings.db_echo,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
        connect_args=_connect_args(),
    )


engine = build_engine(settings.database_url)

# Session factory - creates new database sessions
async_session_maker = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False  # Objects remain accessible after commit
)


# Base class for all our models
class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncIterator[AsyncSession]:
    """
    Dependency injection for FastAPI routes.
    Yields a database session and ensures cleanup.
    """
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def unit_of_work(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    All-or-nothing boundary around a block of work on ``session``.

    Commits when the block finishes, rolls back on any exception and
    re-raises it. Reads made on the session before entering belong to the
    same transaction.
    """
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise


async def insert_ignore(session: AsyncSession, table: Table, values: dict, conflict_columns: list[str]) -> None:
    """INSERT ... ON CONFLICT DO NOTHING for the active dialect."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(table).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(table).values(**values)
    else:
        raise NotImplementedError(f"insert_ignore is not supported on {dialect}")
    await session.execute(stmt.on_conflict_do_nothing(index_elements=conflict_columns))


async def init_db():
    """
    Create all tables in database.
    Called once at application startup.
    """
    from takeaway import models  # noqa: F401  (registers tables on Base.metadata)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
