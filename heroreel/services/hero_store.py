"""Persistence for hero pools, rotation history, memory and failures.

Every record family is stored as a JSON envelope under a namespaced key per
catalog kind and written to two areas: a durable one (the database) and a
session-scoped one (process memory). Reads never raise; malformed, expired
or unreadable data is dropped and treated as absent.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterable, Mapping, TypeVar

from pydantic import ValidationError

from ..errors import StorageReadError
from ..models import FailureEntry, HistoryEntry, MemoryEntry, StoredPool
from ..utils import normalize_kind, now_ms, to_number
from .kv import KeyValueStore, NullKeyValueStore, StoreResult

logger = logging.getLogger(__name__)

POOL_PREFIX = "heroPool:"
HISTORY_PREFIX = "heroHistory:"
MEMORY_PREFIX = "heroMemory:"
FAILURE_PREFIX = "heroFailures:"
SESSION_SUFFIX = ":session"

HISTORY_LIMIT = 80
HISTORY_WINDOW_MS = 1000 * 60 * 60 * 24 * 14
MEMORY_LIMIT = 120
FAILURE_LIMIT = 80

EntryT = TypeVar("EntryT", HistoryEntry, MemoryEntry, FailureEntry)


@dataclass
class ExclusionSet(Generic[EntryT]):
    """Ordered entries plus a set for fast membership checks."""

    entries: list[EntryT] = field(default_factory=list)
    ids: set[str] = field(default_factory=set)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self.ids

    def __len__(self) -> int:
        return len(self.entries)


def resolve_entry_key(entry: Any) -> str | None:
    """Return the stable identifier used to track ``entry`` across stores."""

    if entry is None or isinstance(entry, bool):
        return None
    if isinstance(entry, str):
        return entry.strip() or None
    if isinstance(entry, (int, float)):
        return f"#{entry}"
    if not isinstance(entry, Mapping):
        return None
    for key in ("poolId", "poolEntryId", "heroId"):
        if entry.get(key) is not None:
            return str(entry[key])
    cta = entry.get("cta")
    if isinstance(cta, Mapping) and cta.get("id") is not None:
        return str(cta["id"])
    ids = entry.get("ids")
    if isinstance(ids, Mapping):
        for scheme in ("imdb", "tmdb", "tvdb"):
            if ids.get(scheme):
                return f"{scheme}:{ids[scheme]}"
    if entry.get("guid"):
        return str(entry["guid"])
    if entry.get("ratingKey") is not None:
        return f"rk:{entry['ratingKey']}"
    if entry.get("id") is not None:
        return str(entry["id"])
    for key in ("slug", "key"):
        value = entry.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    if entry.get("title"):
        suffix = f":{entry['year']}" if entry.get("year") else ""
        return f"title:{entry['title']}{suffix}"
    return None


def _decode(key: str, raw: str | None) -> Any:
    try:
        return json.loads(raw or "")
    except (TypeError, ValueError) as exc:
        raise StorageReadError(f"corrupt {key} entry: {exc}") from exc


def _entry_timestamp(raw: Mapping[str, Any]) -> float | None:
    for key in ("ts", "timestamp", "time", "at"):
        if key in raw:
            return to_number(raw[key])
    return None


class HeroStore:
    """Pool cache, rotation history, short-term memory and failure registry."""

    def __init__(
        self,
        durable: KeyValueStore | None = None,
        session: KeyValueStore | None = None,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._durable: KeyValueStore = durable or NullKeyValueStore("durable")
        self._session: KeyValueStore = session or NullKeyValueStore("session")
        self._clock = clock

    # ------------------------------------------------------------------
    # Raw access
    # ------------------------------------------------------------------
    async def _load(self, area: KeyValueStore, key: str) -> StoreResult[Any]:
        result = await area.get(key)
        if not result.ok:
            return result
        try:
            return StoreResult.success(_decode(key, result.value))
        except StorageReadError as exc:
            return StoreResult.corrupt(str(exc))

    async def _read_json(self, area: KeyValueStore, key: str) -> Any:
        result = await self._load(area, key)
        if result.ok:
            return result.value
        if result.status != "missing":
            logger.warning(
                "Ignoring %s in %s storage (%s): %s", key, area.name, result.status, result.error
            )
        return None

    async def _write_both(self, key: str, payload: Any) -> None:
        if payload is None:
            results = await asyncio.gather(
                self._durable.remove(key), self._session.remove(f"{key}{SESSION_SUFFIX}")
            )
        else:
            try:
                encoded = json.dumps(payload)
            except (TypeError, ValueError) as exc:
                logger.warning("Failed to serialise %s payload: %s", key, exc)
                return
            results = await asyncio.gather(
                self._durable.set(key, encoded),
                self._session.set(f"{key}{SESSION_SUFFIX}", encoded),
            )
        for area, result in zip((self._durable, self._session), results):
            self._log_write_failure(area, key, result)

    @staticmethod
    def _log_write_failure(area: KeyValueStore, key: str, result: StoreResult[None]) -> None:
        if not result.ok:
            logger.warning("Failed to write %s to %s storage: %s", key, area.name, result.error)

    async def _read_list(self, key: str) -> list[Mapping[str, Any]]:
        raw = await self._read_json(self._durable, key)
        if raw is None:
            raw = await self._read_json(self._session, f"{key}{SESSION_SUFFIX}")
        if not isinstance(raw, list):
            return []
        return [entry for entry in raw if isinstance(entry, Mapping)]

    @staticmethod
    def _key(prefix: str, kind: str) -> str:
        return f"{prefix}{normalize_kind(kind)}"

    # ------------------------------------------------------------------
    # Pool cache
    # ------------------------------------------------------------------
    async def get_stored_pool(
        self,
        kind: str,
        *,
        now: int | None = None,
        policy_hash: str | None = None,
        allow_expired: bool = False,
    ) -> StoredPool | None:
        """Return the cached pool for ``kind`` if it is still usable.

        Expired pools are only returned when ``allow_expired`` is set; they
        come back flagged with ``is_expired`` so the caller can apply its
        grace window.
        """

        current = self._clock() if now is None else now
        key = self._key(POOL_PREFIX, kind)
        session_raw = await self._read_json(self._session, f"{key}{SESSION_SUFFIX}")
        durable_raw = None
        if not isinstance(session_raw, Mapping):
            session_raw = None
            durable_raw = await self._read_json(self._durable, key)
        raw = session_raw or durable_raw
        if not isinstance(raw, Mapping):
            return None
        try:
            pool = StoredPool.model_validate(
                {**raw, "kind": normalize_kind(raw.get("kind") or kind)}
            )
        except ValidationError as exc:
            logger.warning("Discarding malformed hero pool for %s: %s", kind, exc)
            return None

        valid = pool.expires_at > current
        matches_policy = pool.policy_hash == policy_hash if policy_hash else True
        if not allow_expired and not valid:
            return None
        if not matches_policy:
            return None
        return pool.model_copy(
            update={
                "is_expired": not valid,
                "matches_policy": matches_policy,
                "source": "session" if session_raw is not None else "durable",
            }
        )

    async def store_pool(self, kind: str, payload: StoredPool | Mapping[str, Any] | None) -> None:
        """Replace the cached pool for ``kind``; ``None`` clears it."""

        if payload is None:
            await self.invalidate_pool(kind)
            return
        if isinstance(payload, StoredPool):
            pool = payload.model_copy(update={"kind": normalize_kind(kind)})
        else:
            try:
                pool = StoredPool.model_validate({**payload, "kind": normalize_kind(kind)})
            except ValidationError as exc:
                logger.warning("Refusing to store malformed hero pool for %s: %s", kind, exc)
                return
        await self._write_both(self._key(POOL_PREFIX, kind), pool.to_storage())

    async def invalidate_pool(self, kind: str) -> None:
        await self._write_both(self._key(POOL_PREFIX, kind), None)

    # ------------------------------------------------------------------
    # Rotation history
    # ------------------------------------------------------------------
    async def _load_history(self, kind: str) -> list[HistoryEntry]:
        entries: list[HistoryEntry] = []
        for raw in await self._read_list(self._key(HISTORY_PREFIX, kind)):
            item_id = str(raw.get("id") or "")
            ts = _entry_timestamp(raw)
            if item_id and ts is not None:
                entries.append(HistoryEntry(id=item_id, ts=int(ts)))
        return entries

    async def record_hero_history(
        self,
        kind: str,
        entry: Any,
        *,
        timestamp: int | None = None,
        limit: int = HISTORY_LIMIT,
    ) -> list[HistoryEntry] | None:
        item_id = resolve_entry_key(entry)
        if not item_id:
            return None
        ts = self._clock() if timestamp is None else timestamp
        existing = [item for item in await self._load_history(kind) if item.id != item_id]
        merged = [HistoryEntry(id=item_id, ts=ts), *existing]
        pruned = [item for item in merged if ts - item.ts <= HISTORY_WINDOW_MS]
        pruned = pruned[: max(1, limit)]
        await self._write_both(
            self._key(HISTORY_PREFIX, kind), [item.model_dump() for item in pruned]
        )
        return pruned

    async def get_hero_history(
        self,
        kind: str,
        *,
        now: int | None = None,
        window_ms: int = HISTORY_WINDOW_MS,
        limit: int = HISTORY_LIMIT,
    ) -> ExclusionSet[HistoryEntry]:
        current = self._clock() if now is None else now
        threshold = current - max(0, window_ms)
        result: ExclusionSet[HistoryEntry] = ExclusionSet()
        for item in await self._load_history(kind):
            if item.ts < threshold or item.id in result.ids:
                continue
            result.ids.add(item.id)
            result.entries.append(item)
            if len(result.entries) >= limit:
                break
        return result

    # ------------------------------------------------------------------
    # Short-term memory
    # ------------------------------------------------------------------
    async def _load_memory(self, kind: str) -> list[MemoryEntry]:
        entries: list[MemoryEntry] = []
        for raw in await self._read_list(self._key(MEMORY_PREFIX, kind)):
            item_id = str(raw.get("id") or "")
            ts = _entry_timestamp(raw)
            slot = raw.get("slot")
            if item_id and ts is not None:
                entries.append(
                    MemoryEntry(id=item_id, ts=int(ts), slot=str(slot) if slot is not None else None)
                )
        return entries

    async def record_hero_memory(
        self,
        kind: str,
        entries: Iterable[Any],
        *,
        timestamp: int | None = None,
        ttl_ms: int = 0,
        limit: int = MEMORY_LIMIT,
    ) -> list[MemoryEntry]:
        """Remember freshly shown items; new ids replace preserved ones."""

        additions: list[MemoryEntry] = []
        addition_ids: set[str] = set()
        ts = self._clock() if timestamp is None else timestamp
        for entry in entries or ():
            item_id = resolve_entry_key(entry)
            if not item_id or item_id in addition_ids:
                continue
            slot = None
            if isinstance(entry, Mapping):
                slot = entry.get("slot") or entry.get("poolSlot")
            additions.append(
                MemoryEntry(id=item_id, ts=ts, slot=str(slot) if slot else None)
            )
            addition_ids.add(item_id)
        if not additions:
            return []

        threshold = max(0, ts - ttl_ms) if ttl_ms > 0 else 0
        preserved: list[MemoryEntry] = []
        seen: set[str] = set()
        for item in await self._load_memory(kind):
            if threshold and item.ts < threshold:
                continue
            if item.id in seen or item.id in addition_ids:
                continue
            seen.add(item.id)
            preserved.append(item)

        merged = [*additions, *preserved][: max(1, limit)]
        await self._write_both(
            self._key(MEMORY_PREFIX, kind),
            [item.model_dump(exclude_none=True) for item in merged],
        )
        return merged

    async def get_hero_memory(
        self,
        kind: str,
        *,
        now: int | None = None,
        window_ms: int = 0,
        limit: int = MEMORY_LIMIT,
    ) -> ExclusionSet[MemoryEntry]:
        current = self._clock() if now is None else now
        threshold = max(0, current - window_ms) if window_ms > 0 else 0
        result: ExclusionSet[MemoryEntry] = ExclusionSet()
        for item in await self._load_memory(kind):
            if threshold and item.ts < threshold:
                continue
            if item.id in result.ids:
                continue
            result.ids.add(item.id)
            result.entries.append(item)
            if len(result.entries) >= limit:
                break
        return result

    async def clear_hero_memory(self, kind: str) -> None:
        await self._write_both(self._key(MEMORY_PREFIX, kind), None)

    # ------------------------------------------------------------------
    # Failure registry
    # ------------------------------------------------------------------
    async def _load_failures(self, kind: str) -> list[FailureEntry]:
        entries: list[FailureEntry] = []
        for raw in await self._read_list(self._key(FAILURE_PREFIX, kind)):
            item_id = str(raw.get("id") or "")
            ts = _entry_timestamp(raw)
            if not item_id or ts is None:
                continue
            reason = raw.get("reason")
            hits = to_number(raw.get("hits"))
            entries.append(
                FailureEntry(
                    id=item_id,
                    ts=int(ts),
                    reason=reason if isinstance(reason, str) else "",
                    hits=int(hits) if hits else 0,
                )
            )
        return entries

    async def _write_failures(self, kind: str, entries: list[FailureEntry]) -> None:
        await self._write_both(
            self._key(FAILURE_PREFIX, kind), [item.model_dump() for item in entries]
        )

    async def record_hero_failure(
        self,
        kind: str,
        entry: Any,
        *,
        timestamp: int | None = None,
        ttl_ms: int = 0,
        limit: int = FAILURE_LIMIT,
        reason: str = "",
    ) -> FailureEntry | None:
        """Blacklist ``entry`` for the failure window, counting repeat hits."""

        item_id = resolve_entry_key(entry)
        if not item_id:
            return None
        ts = self._clock() if timestamp is None else timestamp
        threshold = max(0, ts - ttl_ms) if ttl_ms > 0 else 0
        hits = 0
        kept: list[FailureEntry] = []
        for item in await self._load_failures(kind):
            if item.id == item_id:
                hits = item.hits + 1
                continue
            if threshold and item.ts < threshold:
                continue
            kept.append(item)
        failure = FailureEntry(id=item_id, ts=ts, reason=reason or "", hits=hits)
        await self._write_failures(kind, [failure, *kept][: max(1, limit)])
        return failure

    async def resolve_hero_failure(self, kind: str, entry: Any) -> bool:
        """Forget a failure once the item has been normalized successfully."""

        item_id = resolve_entry_key(entry)
        if not item_id:
            return False
        existing = await self._load_failures(kind)
        remaining = [item for item in existing if item.id != item_id]
        if len(remaining) == len(existing):
            return False
        await self._write_failures(kind, remaining)
        return True

    async def get_hero_failures(
        self,
        kind: str,
        *,
        now: int | None = None,
        window_ms: int = 0,
        limit: int = FAILURE_LIMIT,
    ) -> ExclusionSet[FailureEntry]:
        current = self._clock() if now is None else now
        threshold = max(0, current - window_ms) if window_ms > 0 else 0
        result: ExclusionSet[FailureEntry] = ExclusionSet()
        for item in await self._load_failures(kind):
            if threshold and item.ts < threshold:
                continue
            if item.id in result.ids:
                continue
            result.ids.add(item.id)
            result.entries.append(item)
            if len(result.entries) >= limit:
                break
        return result

    async def clear_hero_failures(self, kind: str) -> None:
        await self._write_both(self._key(FAILURE_PREFIX, kind), None)
