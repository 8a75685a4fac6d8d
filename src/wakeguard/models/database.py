from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
from sqlalchemy.pool import NullPool
from sqlalchemy import text
from .base import Base
from ..config import settings
from ..utils.logging import setup_logger

logger = setup_logger(__name__)

def _connect_args(database_url: str, timeout: float) -> dict:
    if database_url.startswith("postgresql+asyncpg"):
        return {"command_timeout": timeout, "timeout": timeout}
    if database_url.startswith("sqlite+aiosqlite"):
        return {"timeout": timeout}
    return {}

def create_db_engine(database_url: str = None, pooled: bool = True) -> AsyncEngine:
    """Create an async engine with bounded connect and statement timeouts.

    Celery tasks run each tick in a fresh event loop, so they ask for a
    non-pooled engine and dispose it afterwards.
    """
    url = database_url or settings.database_url
    kwargs = {"connect_args": _connect_args(url, settings.db_timeout_seconds)}
    if pooled:
        kwargs.update(pool_pre_ping=True, pool_timeout=settings.db_timeout_seconds)
    else:
        kwargs["poolclass"] = NullPool
    return create_async_engine(url, **kwargs)

def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# Create async engine
engine = create_db_engine()

# Create async session factory
async_session = create_session_factory(engine)

async def init_db(db_engine: AsyncEngine = None):
    # Register every table on Base.metadata
    from . import challenge, payment, notification  # noqa: F401
    async with (db_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

async def check_db_connection(db_engine: AsyncEngine = None) -> bool:
    """Check if the database connection is working."""
    try:
        async with (db_engine or engine).connect() as conn:
            await conn.execute(text("SELECT 1"))
            return True
    except Exception as e:
        logger.error(f"Database connection error: {e}")
        return False
