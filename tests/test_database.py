from __future__ import annotations

import asyncio

from sqlalchemy import create_engine, inspect, text

from heroreel.database import Database
from heroreel.services.kv import DatabaseKeyValueStore


def _initialise_legacy_schema(database_path: str) -> None:
    """Create a legacy hero_kv table lacking the updated_at column."""

    engine = create_engine(f"sqlite:///{database_path}")
    try:
        with engine.begin() as connection:
            connection.execute(
                text(
                    """
                    CREATE TABLE hero_kv (
                        key VARCHAR(255) PRIMARY KEY,
                        value TEXT
                    )
                    """
                )
            )
            connection.execute(
                text("INSERT INTO hero_kv (key, value) VALUES ('heroHistory:movies', '[]')")
            )
    finally:
        engine.dispose()


def test_create_all_upgrades_legacy_table(tmp_path) -> None:
    """Schema migrations should backfill updated_at and index it."""

    database_path = tmp_path / "legacy.db"
    _initialise_legacy_schema(str(database_path))

    database = Database(f"sqlite+aiosqlite:///{database_path}")
    asyncio.run(database.create_all())
    asyncio.run(database.dispose())

    inspector_engine = create_engine(f"sqlite:///{database_path}")
    try:
        inspector = inspect(inspector_engine)
        columns = {column["name"] for column in inspector.get_columns("hero_kv")}
        indexes = {index["name"] for index in inspector.get_indexes("hero_kv")}
        with inspector_engine.connect() as connection:
            backfilled = connection.execute(
                text("SELECT updated_at FROM hero_kv WHERE key = 'heroHistory:movies'")
            ).scalar_one()
    finally:
        inspector_engine.dispose()

    assert "updated_at" in columns
    assert "ix_hero_kv_updated_at" in indexes
    assert backfilled is not None


def test_database_store_round_trips_values(tmp_path) -> None:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'hero.db'}")

    async def scenario() -> tuple[object, object, object]:
        await database.create_all()
        store = DatabaseKeyValueStore(database.session_factory)
        await store.set("heroPool:movies", '{"items": []}')
        await store.set("heroPool:movies", '{"items": [1]}')
        stored = await store.get("heroPool:movies")
        await store.remove("heroPool:movies")
        missing = await store.get("heroPool:movies")
        await database.dispose()
        return stored, missing, store.name

    stored, missing, name = asyncio.run(scenario())

    assert stored.ok and stored.value == '{"items": [1]}'
    assert missing.status == "missing"
    assert name == "durable"
