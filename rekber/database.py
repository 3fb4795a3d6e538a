import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import event, text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from rekber.config import settings
from rekber.core.exceptions import StoreBusyError

logger = logging.getLogger(__name__)

_is_sqlite = settings.database_url.startswith("sqlite")

# Engine config: PostgreSQL needs connection pool settings, SQLite does not
_engine_kwargs: dict = {"echo": False}
if not _is_sqlite:
    _engine_kwargs.update({
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": settings.db_pool_timeout_seconds,
        "pool_recycle": 1800,  # Recycle connections every 30 min (prevent stale connections)
    })

engine = create_async_engine(settings.database_url, **_engine_kwargs)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# SQLite-only: Enable WAL mode and busy_timeout for concurrent access.
if _is_sqlite:
    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={settings.db_lock_timeout_ms}")
        cursor.close()


class Base(DeclarativeBase):
    pass


# PostgreSQL SQLSTATEs for lock_timeout (55P03) and statement cancel (57014)
_LOCK_TIMEOUT_SQLSTATES = {"55P03", "57014"}


def _is_lock_timeout(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _LOCK_TIMEOUT_SQLSTATES:
        return True
    # SQLite reports an expired busy_timeout as "database is locked"
    return isinstance(exc, OperationalError) and "locked" in str(orig).lower()


@asynccontextmanager
async def unit_of_work(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Run a block of store mutations atomically.

    Commits when the block exits cleanly, rolls back on any exception. Lock
    waits are bounded: on PostgreSQL via ``SET LOCAL lock_timeout``, on SQLite
    via ``busy_timeout``. A wait that runs out surfaces as ``StoreBusyError``.
    """
    try:
        if not _is_sqlite:
            await db.execute(text(f"SET LOCAL lock_timeout = {int(settings.db_lock_timeout_ms)}"))
        yield db
        await db.commit()
    except PoolTimeoutError as exc:
        await db.rollback()
        logger.warning("Connection pool exhausted: %s", exc)
        raise StoreBusyError() from exc
    except DBAPIError as exc:
        await db.rollback()
        if _is_lock_timeout(exc):
            logger.warning("Lock wait exceeded %sms: %s", settings.db_lock_timeout_ms, exc)
            raise StoreBusyError() from exc
        raise
    except BaseException:
        await db.rollback()
        raise


async def get_db() -> AsyncSession:
    """FastAPI dependency that yields a database session."""
    async with async_session() as session:
        yield session


async def init_db():
    """Create all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db():
    """Drop all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def dispose_engine():
    """Dispose of the engine connection pool. Call on shutdown."""
    await engine.dispose()
