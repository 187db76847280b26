"""Async database connection using SQLAlchemy (supports SQLite and PostgreSQL)."""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from livesync.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

T = TypeVar("T")

# Fragments of driver messages that mark a failure as worth retrying
_TRANSIENT_MARKERS = (
    "deadlock detected",
    "database is locked",
    "connection reset",
    "connection was closed",
    "connection is closed",
    "terminated",
    "timeout",
    "timed out",
    "could not serialize",
)


def get_database_url(url: Optional[str] = None) -> str:
    """Convert database URL to async format."""
    url = url or settings.DATABASE_URL

    # SQLite
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)

    # PostgreSQL
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return url


def build_engine(url: Optional[str] = None):
    """Create the async engine with dialect-specific pool settings."""
    database_url = get_database_url(url)
    engine_kwargs = {"echo": False}

    if database_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs["pool_pre_ping"] = True
        engine_kwargs["pool_size"] = 10
        engine_kwargs["max_overflow"] = 20
        engine_kwargs["pool_recycle"] = 300
        engine_kwargs["pool_timeout"] = 30
        engine_kwargs["pool_reset_on_return"] = "rollback"
        # Background workers tolerate tens of seconds; anything slower is killed
        engine_kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": "30000"}
        }

    return create_async_engine(database_url, **engine_kwargs)


def build_session_factory(engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async_engine = build_engine()
AsyncSessionLocal = build_session_factory(async_engine)


async def init_db(engine=None) -> None:
    """Initialize database tables."""
    # Register table metadata before create_all
    import livesync.models  # noqa: F401

    logger.info("Initializing database tables...")
    async with (engine or async_engine).begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("Database tables created successfully.")


async def close_db() -> None:
    """Close database connections."""
    logger.info("Closing database connections...")
    await async_engine.dispose()
    logger.info("Database connections closed.")


def is_transient_db_error(exc: BaseException) -> bool:
    """True for connection drops, lock timeouts and deadlocks; False for constraint errors."""
    if isinstance(exc, (InterfaceError, OperationalError)):
        return True
    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        err_msg = str(exc.orig) if getattr(exc, "orig", None) is not None else str(exc)
        return any(marker in err_msg.lower() for marker in _TRANSIENT_MARKERS)
    if isinstance(exc, (ConnectionError, asyncio.TimeoutError)):
        return True
    return False


async def run_with_retry(
    write_fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_wait: float = 0.5,
    label: Any = None,
) -> T:
    """Execute a short DB unit of work, retrying transient failures with backoff and jitter.

    write_fn is an async callable that opens its own session, does its work and
    commits. Business-rule outcomes are return values, not exceptions, so only
    I/O failures reach the retry branch.
    """
    for attempt in range(max_retries):
        try:
            return await write_fn()
        except Exception as e:
            if not is_transient_db_error(e):
                raise
            if attempt >= max_retries - 1:
                logger.error(
                    f"[STORE] Transient failure persisted after {max_retries} attempts "
                    f"({label}): {e}"
                )
                raise
            wait = (base_wait * (2 ** attempt)) + random.uniform(0, 0.1)
            logger.warning(
                f"[STORE] Transient failure ({label}), "
                f"retry {attempt + 1}/{max_retries} after {wait:.2f}s: {e}"
            )
            await asyncio.sleep(wait)
    raise RuntimeError("run_with_retry called with max_retries < 1")

