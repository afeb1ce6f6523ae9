"""Database configuration and session management.

This module constructs an asynchronous SQLAlchemy engine and session
factory for the application from ``DATABASE_URL``.  PostgreSQL URLs are
normalised to the async ``psycopg`` driver; SQLite URLs are upgraded to
``aiosqlite``.  A fallback to a local SQLite file is permitted in
development when ``DB_DEV_FALLBACK_SQLITE`` is enabled.

The usage ledger depends on two statements the storage layer must run
atomically on its own: a conditional ``UPDATE`` of the quota counter
and an ``INSERT ... ON CONFLICT DO NOTHING`` for purchases.  Both are
supported by PostgreSQL and SQLite; ``upsert_insert`` picks the
dialect-specific construct.
"""

from __future__ import annotations

import logging
from typing import AsyncGenerator, Any, Dict, Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from packverify.core.config import settings

logger = logging.getLogger(__name__)

SQLITE_FALLBACK_URL = "sqlite+aiosqlite:///./packverify.db"


def normalize_database_url(url: str) -> str:
    """Return ``url`` rewritten to use an async driver."""
    url_obj = make_url(url)
    driver = url_obj.drivername or ""
    if driver == "sqlite":
        url_obj = url_obj.set(drivername="sqlite+aiosqlite")
    elif driver in {"postgresql", "postgres", "postgresql+psycopg2", "postgresql+asyncpg"}:
        q = dict(url_obj.query or {})
        # Always require SSL unless explicitly configured
        if not q.get("sslmode"):
            q["sslmode"] = "require"
        url_obj = url_obj.set(drivername="postgresql+psycopg", query=q)
    return url_obj.render_as_string(hide_password=False)


def _resolve_database_url() -> str:
    if settings.DATABASE_URL:
        return normalize_database_url(settings.DATABASE_URL)
    if not settings.DB_DEV_FALLBACK_SQLITE:
        raise RuntimeError(
            "No database URL provided via DATABASE_URL; with "
            "DB_DEV_FALLBACK_SQLITE=false, a Postgres URL is required."
        )
    return SQLITE_FALLBACK_URL


db_url = _resolve_database_url()
logger.info("Creating async engine with URL: %s", make_url(db_url).render_as_string(hide_password=True))

engine = create_async_engine(db_url, echo=False, pool_pre_ping=True)

# Create session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

# Declarative base
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that yields a database session.

    Each session is scoped to the request and closed after use.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    """Create all tables defined on the declarative ``Base``."""
    async with engine.begin() as conn:
        # Import all models to ensure metadata is populated
        from packverify.models import tables  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)


def upsert_insert(session: AsyncSession, table: Any):
    """Return a dialect ``insert()`` that supports ``on_conflict_do_nothing``."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise RuntimeError(f"insert-if-absent is not supported on dialect {dialect!r}")


def get_db_debug_info() -> Dict[str, Any]:
    """Return non-sensitive information about the current DB engine for debugging."""
    info: Dict[str, Any] = {"environment": settings.ENVIRONMENT}
    url_obj: Optional[Any] = None
    try:
        url_obj = make_url(str(engine.url))
    except Exception as ex:
        info["error"] = f"unable to parse engine url: {ex}"
    if url_obj is not None:
        info.update(
            {
                "drivername": url_obj.drivername,
                "host": url_obj.host,
                "database": url_obj.database,
                "url": url_obj.render_as_string(hide_password=True),
            }
        )
    return info
