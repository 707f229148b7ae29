"""Database connection and session management."""

from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from number_pool.core.config import settings
from number_pool.core.logging import get_logger

logger = get_logger(__name__)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class."""

    pass


# Query parameters that Supabase adds but asyncpg doesn't support
UNSUPPORTED_PARAMS = {"connection_limit", "pool_timeout", "pgbouncer", "statement_cache_size"}


def get_async_database_url(url: str) -> str:
    """Convert database URL to async-compatible format for asyncpg."""
    parsed = urlparse(url)

    scheme = parsed.scheme
    if scheme in ("postgresql", "postgres"):
        scheme = "postgresql+asyncpg"

    if parsed.query:
        params = parse_qs(parsed.query)
        filtered_params = {k: v for k, v in params.items() if k not in UNSUPPORTED_PARAMS}
        query = urlencode(filtered_params, doseq=True)
    else:
        query = ""

    return urlunparse((
        scheme,
        parsed.netloc,
        parsed.path,
        parsed.params,
        query,
        parsed.fragment,
    ))


engine = create_async_engine(
    get_async_database_url(settings.database_url),
    echo=settings.debug,
    pool_pre_ping=True,
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def init_db() -> None:
    """Create tables that don't exist yet.

    Production schema changes go through Alembic (``alembic upgrade head``);
    this only covers fresh databases.
    """
    # Register models on the metadata
    import number_pool.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("database_initialized")
