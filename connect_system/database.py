"""Database connection and transaction helpers."""
import logging
from contextlib import asynccontextmanager
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from config import config
from errors import TransientStoreError
from models import Base

logger = logging.getLogger(__name__)


def is_memory_sqlite(url: str) -> bool:
    parsed = make_url(url)
    return parsed.get_backend_name() == "sqlite" and parsed.database in (None, "", ":memory:")


def build_engine(url: str = None):
    """Create an async engine.

    In-memory SQLite shares one connection through StaticPool so every
    session sees the same database. File-backed SQLite keeps the default
    pool, giving each session its own connection and transaction.
    """
    url = url or config.DATABASE_URL
    if is_memory_sqlite(url):
        return create_async_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False
        )
    if url.startswith("sqlite"):
        return create_async_engine(url, connect_args={"check_same_thread": False}, echo=False)
    return create_async_engine(url, echo=False, pool_pre_ping=True)


engine = build_engine()

# Create session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


async def init_db(bind=None):
    """Initialize database tables."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db():
    """Dependency to get database session."""
    async with AsyncSessionLocal() as session:
        yield session


def get_db_session():
    """Get database session as context manager (for CLI and background usage).

    Returns:
        Async context manager for database session
    """
    return AsyncSessionLocal()


@asynccontextmanager
async def atomic(db: AsyncSession, operation: str):
    """Commit everything staged inside the block as one transaction.

    Any failure rolls the whole block back. Backend failures are surfaced
    as TransientStoreError so callers can retry; domain errors propagate
    unchanged.

    Args:
        db: Database session
        operation: Short description used in log lines and error messages
    """
    try:
        yield
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Database error during {operation}: {e}", exc_info=True)
        raise TransientStoreError(f"Could not {operation}, please retry") from e
    except Exception:
        await db.rollback()
        raise


@asynccontextmanager
async def reading(operation: str):
    """Translate backend failures on read paths into TransientStoreError."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(f"Database error during {operation}: {e}", exc_info=True)
        raise TransientStoreError(f"Could not {operation}, please retry") from e
