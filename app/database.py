"""
Vettly — Database engine, sessions and shared column helpers

Engine selection
----------------
* ``CLOUD_SQL_USE_UNIX_SOCKET`` + ``CLOUD_SQL_INSTANCE_CONNECTION`` set:
  connect through ``cloud-sql-python-connector`` with IAM auth.
* otherwise: ``DATABASE_URL`` (asyncpg for Postgres, aiosqlite for
  local tooling and tests).

Transactions
------------
A match transition writes the match row, a transition row and up to four
notification rows.  All of them go through one ``AsyncSession`` opened by
:func:`session_scope`, which commits once at the end or rolls back
everything.  Request handlers get that scope through :func:`get_db`;
scheduled jobs open it directly.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, AsyncIterator

import structlog
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.config import Settings, get_settings

logger = structlog.get_logger("vettly.database")


class Base(DeclarativeBase):
    """Declarative base for every Vettly table (see ``app.models``)."""


# Notification payloads, explanation metrics and questionnaire answers are
# stored as JSONB on Postgres and as plain JSON on SQLite.
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Timezone-aware "now", used as the Python-side column default."""
    return datetime.now(timezone.utc)


# ------------------------------------------------------------------ #
# Engine
# ------------------------------------------------------------------ #

_POSTGRES_POOL = {
    "pool_size": 10,
    "max_overflow": 5,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}


def normalise_url(url: str) -> str:
    """Add the asyncpg driver to a bare ``postgresql://`` URL."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def engine_options(url: str, settings: Settings) -> dict[str, Any]:
    """Keyword arguments for ``create_async_engine`` for the given URL.

    SQLite's single-connection pool rejects the queue-pool tuning used for
    Postgres, so it only gets ``echo``.
    """
    options: dict[str, Any] = {"echo": settings.LOG_LEVEL.upper() == "DEBUG"}
    if not url.startswith("sqlite"):
        options.update(_POSTGRES_POOL)
    return options


def _cloud_sql_engine(settings: Settings) -> AsyncEngine:
    from google.cloud.sql.connector import Connector

    connector = Connector()

    async def _connect():
        return await connector.connect_async(
            settings.CLOUD_SQL_INSTANCE_CONNECTION,
            "asyncpg",
            user=settings.DB_USER,
            password=settings.DB_PASSWORD,
            db=settings.DB_NAME,
            enable_iam_auth=True,
        )

    url = "postgresql+asyncpg://"
    logger.info(
        "database_engine_created",
        strategy="cloud_sql_connector",
        instance=settings.CLOUD_SQL_INSTANCE_CONNECTION,
    )
    return create_async_engine(url, async_creator=_connect, **engine_options(url, settings))


def build_engine(settings: Settings | None = None) -> AsyncEngine:
    """Create the process-wide engine from configuration."""
    settings = settings or get_settings()
    if settings.CLOUD_SQL_USE_UNIX_SOCKET and settings.CLOUD_SQL_INSTANCE_CONNECTION:
        return _cloud_sql_engine(settings)

    url = normalise_url(settings.DATABASE_URL)
    logger.info("database_engine_created", strategy="database_url", dialect=url.split(":", 1)[0])
    return create_async_engine(url, **engine_options(url, settings))


engine = build_engine()

async_session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ------------------------------------------------------------------ #
# Sessions
# ------------------------------------------------------------------ #

@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[AsyncSession]:
    """Open a session that commits on exit and rolls back on error.

    Parameters
    ----------
    factory : async_sessionmaker, optional
        Session factory to use.  Defaults to the module-level
        ``async_session_factory``; tests pass one bound to SQLite.
    """
    async with (factory or async_session_factory)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one transactional session per request.

    Domain errors raised inside the handler roll the whole request back,
    so a rejected transition never leaves a half-written notification.
    """
    async with session_scope() as session:
        yield session


# ------------------------------------------------------------------ #
# Counters
# ------------------------------------------------------------------ #

async def increment_counters(
    db_session: AsyncSession,
    model: type[Base],
    keys: dict[str, Any],
    increments: dict[str, int | float],
    values: dict[str, Any] | None = None,
) -> None:
    """Add ``increments`` to the row at ``keys``, creating it if missing.

    Runs as one ``INSERT ... ON CONFLICT DO UPDATE`` so concurrent writers
    never lose an increment and never race on creating the row.

    Parameters
    ----------
    keys : dict
        Primary-key columns of the counter row.
    increments : dict
        Column -> amount.  A new row starts at the amount itself.
    values : dict, optional
        Plain columns written on both insert and update.
    """
    dialect = db_session.get_bind().dialect.name
    insert = postgresql_insert if dialect == "postgresql" else sqlite_insert
    values = values or {}

    stmt = insert(model).values(**keys, **increments, **values)
    set_ = {name: getattr(model, name) + stmt.excluded[name] for name in increments}
    set_.update({name: stmt.excluded[name] for name in values})
    await db_session.execute(
        stmt.on_conflict_do_update(index_elements=list(keys), set_=set_)
    )
