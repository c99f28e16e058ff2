# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Database connection, session management and forward-only migrations."""

import logging
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import Request
from sqlalchemy import event, select, text, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from donorgate_server.errors import ConstraintViolation, StoreUnavailable
from donorgate_server.models import ShareLink
from donorgate_server.models.base import Base

logger = logging.getLogger(__name__)


def create_engine(database_url: str) -> AsyncEngine:
    """Create the process-wide engine. SQLite connections get WAL and foreign keys."""
    engine = create_async_engine(
        database_url,
        echo=False,
        connect_args={"timeout": 30} if database_url.startswith("sqlite") else {},
    )
    if engine.dialect.name == "sqlite":

        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

    return engine


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def session_scope(session_maker: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """One Store transaction: commit on success, roll back on error.

    Driver errors are translated to typed store errors so callers never see
    SQLAlchemy exceptions.
    """
    try:
        async with session_maker() as session:
            async with session.begin():
                yield session
    except IntegrityError as e:
        raise ConstraintViolation(f"Constraint violated: {e.orig}") from e
    except OperationalError as e:
        logger.error("Store unavailable: %s", e)
        raise StoreUnavailable() from e


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Dependency for FastAPI that yields a database session."""
    session_maker = request.app.state.container.session_maker
    async with session_maker() as session:
        try:
            yield session
            await session.commit()
        except IntegrityError as e:
            await session.rollback()
            raise ConstraintViolation(f"Constraint violated: {e.orig}") from e
        except OperationalError as e:
            await session.rollback()
            raise StoreUnavailable() from e
        except Exception:
            await session.rollback()
            raise


def _add_missing_columns(sync_conn) -> list[str]:
    """Probe each table and ALTER TABLE ADD COLUMN for model columns it lacks."""
    added = []
    for table in Base.metadata.sorted_tables:
        rows = sync_conn.exec_driver_sql(f"PRAGMA table_info({table.name})").fetchall()
        existing = {row[1] for row in rows}
        for column in table.columns:
            if column.name in existing or column.primary_key:
                continue
            col_type = column.type.compile(dialect=sync_conn.dialect)
            ddl = f"ALTER TABLE {table.name} ADD COLUMN {column.name} {col_type}"
            if not column.nullable:
                # SQLite needs a default to add a NOT NULL column to existing rows
                ddl += " NOT NULL DEFAULT " + _column_default_sql(column)
            sync_conn.exec_driver_sql(ddl)
            if column.unique:
                sync_conn.exec_driver_sql(
                    f"CREATE UNIQUE INDEX IF NOT EXISTS uq_{table.name}_{column.name} ON {table.name} ({column.name})"
                )
            added.append(f"{table.name}.{column.name}")
    return added


def _column_default_sql(column) -> str:
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        python_type = None
    if python_type is bool or python_type is int:
        return "0"
    if python_type in (list, dict):
        return "'[]'" if python_type is list else "'{}'"
    if column.name.endswith("_at"):
        return "CURRENT_TIMESTAMP"
    return "''"


async def _backfill(conn) -> None:
    """Single bounded pass over derived values older rows may lack."""
    await conn.execute(text("UPDATE donors SET email = lower(trim(email)) WHERE email != lower(trim(email))"))
    rows = (
        await conn.execute(
            select(ShareLink.id, ShareLink.created_at).where(ShareLink.expires_at.is_(None)).limit(10000)
        )
    ).all()
    for link_id, created_at in rows:
        await conn.execute(
            update(ShareLink).where(ShareLink.id == link_id).values(expires_at=created_at + timedelta(days=7))
        )


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables, then apply forward-only migrations. Call at startup."""
    import donorgate_server.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if engine.dialect.name == "sqlite":
            added = await conn.run_sync(_add_missing_columns)
            if added:
                logger.info("Migrated columns: %s", ", ".join(added))
        await _backfill(conn)
