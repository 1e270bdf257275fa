"""Async SQLAlchemy engine backing the durable hero storage area."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import MetaData, inspect, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

# (table, column, add-column DDL, optional backfill statement)
COLUMN_MIGRATIONS: tuple[tuple[str, str, str, str | None], ...] = (
    (
        "hero_kv",
        "updated_at",
        "ALTER TABLE hero_kv ADD COLUMN updated_at DATETIME",
        "UPDATE hero_kv SET updated_at = CURRENT_TIMESTAMP WHERE updated_at IS NULL",
    ),
)

INDEXES: tuple[tuple[str, str], ...] = (
    ("hero_kv", "CREATE INDEX IF NOT EXISTS ix_hero_kv_updated_at ON hero_kv (updated_at)"),
)


class Base(DeclarativeBase):
    metadata = MetaData()


class Database:
    """Owns the engine and session factory for the ``hero_kv`` table."""

    def __init__(self, database_url: str, *, echo: bool = False):
        self._engine: AsyncEngine = create_async_engine(database_url, echo=echo, future=True)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_all(self) -> None:
        """Create the storage table and upgrade databases written by older releases."""

        from . import db_models  # noqa: F401

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
            await connection.run_sync(self._apply_schema_migrations)

    @staticmethod
    def _apply_schema_migrations(sync_connection) -> None:
        inspector = inspect(sync_connection)
        tables = set(inspector.get_table_names())
        columns: dict[str, set[str]] = {}

        for table, column, ddl, backfill in COLUMN_MIGRATIONS:
            if table not in tables:
                continue
            if table not in columns:
                columns[table] = {entry["name"] for entry in inspector.get_columns(table)}
            if column in columns[table]:
                continue
            sync_connection.execute(text(ddl))
            if backfill:
                sync_connection.execute(text(backfill))
            columns[table].add(column)

        for table, ddl in INDEXES:
            if table in tables:
                sync_connection.execute(text(ddl))

    async def dispose(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            yield session
