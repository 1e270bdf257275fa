"""Key/value storage areas used by the hero store."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Generic, Literal, Protocol, TypeVar

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import KeyValueRecord

T = TypeVar("T")

StoreStatus = Literal["ok", "missing", "corrupt", "unavailable"]


@dataclass(frozen=True, slots=True)
class StoreResult(Generic[T]):
    """Outcome of a storage operation.

    Storage problems are reported here instead of being raised so callers can
    treat them as cache misses.
    """

    status: StoreStatus
    value: T | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @classmethod
    def success(cls, value: T | None = None) -> "StoreResult[T]":
        return cls(status="ok", value=value)

    @classmethod
    def missing(cls) -> "StoreResult[T]":
        return cls(status="missing")

    @classmethod
    def corrupt(cls, error: str) -> "StoreResult[T]":
        return cls(status="corrupt", error=error)

    @classmethod
    def unavailable(cls, error: str) -> "StoreResult[T]":
        return cls(status="unavailable", error=error)


class KeyValueStore(Protocol):
    """Minimal string key/value area."""

    name: str

    async def get(self, key: str) -> StoreResult[str]: ...

    async def set(self, key: str, value: str) -> StoreResult[None]: ...

    async def remove(self, key: str) -> StoreResult[None]: ...


class NullKeyValueStore:
    """An area that stores nothing, used when no backend is configured."""

    def __init__(self, name: str = "null") -> None:
        self.name = name

    async def get(self, key: str) -> StoreResult[str]:
        return StoreResult.missing()

    async def set(self, key: str, value: str) -> StoreResult[None]:
        return StoreResult.success()

    async def remove(self, key: str) -> StoreResult[None]:
        return StoreResult.success()


class MemoryKeyValueStore:
    """Process-local area; serves as the session-scoped store."""

    def __init__(self, name: str = "session") -> None:
        self.name = name
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> StoreResult[str]:
        if key not in self._data:
            return StoreResult.missing()
        return StoreResult.success(self._data[key])

    async def set(self, key: str, value: str) -> StoreResult[None]:
        self._data[key] = value
        return StoreResult.success()

    async def remove(self, key: str) -> StoreResult[None]:
        self._data.pop(key, None)
        return StoreResult.success()

    def keys(self) -> list[str]:
        return sorted(self._data)


class DatabaseKeyValueStore:
    """Durable area persisted in the ``hero_kv`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        name: str = "durable",
    ) -> None:
        self.name = name
        self._session_factory = session_factory

    async def get(self, key: str) -> StoreResult[str]:
        try:
            async with self._session_factory() as session:
                record = await session.get(KeyValueRecord, key)
        except SQLAlchemyError as exc:
            return StoreResult.unavailable(str(exc))
        if record is None:
            return StoreResult.missing()
        return StoreResult.success(record.value)

    async def set(self, key: str, value: str) -> StoreResult[None]:
        try:
            async with self._session_factory() as session:
                record = await session.get(KeyValueRecord, key)
                if record is None:
                    session.add(
                        KeyValueRecord(key=key, value=value, updated_at=datetime.utcnow())
                    )
                else:
                    record.value = value
                    record.updated_at = datetime.utcnow()
                await session.commit()
        except SQLAlchemyError as exc:
            return StoreResult.unavailable(str(exc))
        return StoreResult.success()

    async def remove(self, key: str) -> StoreResult[None]:
        try:
            async with self._session_factory() as session:
                await session.execute(
                    delete(KeyValueRecord).where(KeyValueRecord.key == key)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            return StoreResult.unavailable(str(exc))
        return StoreResult.success()
