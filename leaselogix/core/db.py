import asyncio
import logging
import re
from collections.abc import AsyncGenerator

from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from leaselogix.core.config import get_settings
from leaselogix.models.base import Base

logger = logging.getLogger(__name__)
settings = get_settings()


def get_async_database_url(url: str) -> str:
    """Convert database URL to async-compatible format using psycopg driver."""
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    elif url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+psycopg://", 1)
    elif url.startswith("sqlite://"):
        url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)

    if "channel_binding=" in url:
        url = re.sub(r'[&?]channel_binding=[^&]*', '', url)
        url = url.replace('?&', '?').rstrip('?')

    return url


def enable_sqlite_savepoints(async_engine: AsyncEngine) -> None:
    """Let SQLAlchemy own BEGIN so that SAVEPOINT behaves under pysqlite/aiosqlite."""

    @event.listens_for(async_engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(url: str, echo: bool = False, **kwargs) -> AsyncEngine:
    database_url = get_async_database_url(url)
    if database_url.startswith("sqlite"):
        sqlite_engine = create_async_engine(database_url, future=True, echo=echo, **kwargs)
        enable_sqlite_savepoints(sqlite_engine)
        return sqlite_engine

    return create_async_engine(
        database_url,
        future=True,
        echo=echo,
        pool_pre_ping=True,  # Verify connections before using
        pool_recycle=3600,   # Recycle connections after 1 hour
        pool_timeout=10,     # Wait up to 10 seconds for a connection from pool
        max_overflow=10,     # Allow extra connections beyond pool_size
        connect_args={"connect_timeout": 10},
    )


engine: AsyncEngine = build_engine(settings.database_url, echo=settings.debug)
logger.info("Database engine created for %s", engine.url.render_as_string(hide_password=True))

AsyncSessionFactory = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionFactory() as session:
        try:
            yield session
        except SQLAlchemyError:
            await session.rollback()
            raise


async def init_database() -> None:
    """Create all tables. In production use Alembic migrations instead."""
    import leaselogix.models  # noqa: F401 register every table on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


async def test_database_connection() -> bool:
    """Test database connection with timeout."""

    async def _test_connection():
        async with engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            result.fetchone()

    try:
        await asyncio.wait_for(_test_connection(), timeout=10.0)
        return True
    except asyncio.TimeoutError:
        logger.error("Database connection test timed out after 10 seconds")
        return False
    except Exception:
        logger.exception("Database connection test failed")
        return False
