"""Build, cache and rotate hero pools per catalog kind."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from ..errors import EnrichmentCancelled, HeroError, NormalizeFailure, RateLimitError
from ..events import EventChannel, ProgressEvent
from ..models import HeroPoolResult, NormalizedHeroItem, StoredPool
from ..policy import DEFAULT_POLICY, HeroPolicy
from ..utils import PoolKind, normalize_kind, now_ms
from .hero_store import MEMORY_LIMIT, HeroStore
from .normalizer import HeroNormalizer
from .planner import Candidate, SelectionContext, compute_slot_plan, plan, prepare_candidates
from .tmdb import Credential, TMDBClient

logger = logging.getLogger(__name__)

BUILD_HISTORY_WINDOW_MS = 1000 * 60 * 60 * 24 * 7
BUILD_HISTORY_LIMIT = 60
FALLBACK_HISTORY_WINDOW_MS = 1000 * 60 * 60 * 24 * 30


@dataclass(slots=True)
class _NormalizeOutcome:
    items: list[NormalizedHeroItem]
    rate_limit_hit: bool = False
    cancelled: bool = False


@dataclass(slots=True)
class EnrichOptions:
    """Per-build switches forwarded to the normalizer."""

    enrich: bool = True
    credential: Credential | str | None = None
    settings: Mapping[str, Any] | None = None
    force_refresh: bool = False
    cancel_event: asyncio.Event | None = None
    stop_on_cancel: bool = True


def policy_signature(policy: HeroPolicy, kind: str) -> str:
    return policy.signature(kind)


class HeroPoolService:
    """Coordinates selection, enrichment and persistence of hero pools."""

    def __init__(
        self,
        store: HeroStore,
        normalizer: HeroNormalizer,
        policy_provider: Callable[[], HeroPolicy] | None = None,
        events: EventChannel[ProgressEvent] | None = None,
        *,
        clock: Callable[[], int] = now_ms,
        rng: random.Random | None = None,
        tmdb_client: TMDBClient | None = None,
    ) -> None:
        self._store = store
        self._normalizer = normalizer
        self._tmdb = tmdb_client
        self._policy_provider = policy_provider or (lambda: DEFAULT_POLICY)
        self.progress: EventChannel[ProgressEvent] = events or EventChannel("hero-progress")
        self._clock = clock
        self._rng = rng
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def policy(self) -> HeroPolicy:
        return self._policy_provider()

    def now(self) -> int:
        return self._clock()

    def _emit(self, stage: str, kind: str, **fields: Any) -> None:
        self.progress.publish(
            ProgressEvent(stage=stage, kind=kind, timestamp=self._clock(), **fields)  # type: ignore[arg-type]
        )

    async def ensure_pool(
        self,
        kind: str,
        items: Sequence[Mapping[str, Any]] | None,
        *,
        force: bool = False,
        policy: HeroPolicy | None = None,
        options: EnrichOptions | None = None,
    ) -> HeroPoolResult:
        """Return a usable pool for ``kind``, building one when needed.

        Builds for the same kind are serialized so concurrent callers never
        interleave writes to one stored pool; a caller that waited behind a
        build will usually be served the freshly cached result.
        """

        normalized_kind = normalize_kind(kind)
        lock = self._locks.setdefault(normalized_kind, asyncio.Lock())
        async with lock:
            return await self._build(
                normalized_kind,
                list(items or []),
                force=force,
                policy=policy or self.policy,
                options=options or EnrichOptions(),
            )

    async def force_regenerate(
        self,
        kind: str,
        items: Sequence[Mapping[str, Any]] | None,
        *,
        policy: HeroPolicy | None = None,
        options: EnrichOptions | None = None,
    ) -> HeroPoolResult:
        return await self.ensure_pool(kind, items, force=True, policy=policy, options=options)

    async def clear_pool(self, kind: str) -> None:
        await self._store.invalidate_pool(kind)

    async def record_shown(self, kind: str, entry: Any) -> None:
        """Add a displayed item to the rotation history."""

        await self._store.record_hero_history(kind, entry, timestamp=self._clock())

    async def _tmdb_meta(self, hit_limit: bool) -> dict[str, Any]:
        """Describe the enrichment provider as it is right now."""

        if self._tmdb is None:
            return {"enabled": False, "rateLimit": None, "hitLimit": hit_limit}
        return {
            "enabled": await self._tmdb.has_credentials(),
            "rateLimit": self._tmdb.breaker.state.to_payload(),
            "hitLimit": hit_limit,
        }

    async def _from_cache(self, cached: StoredPool, *, stale: bool) -> HeroPoolResult:
        result = HeroPoolResult.from_stored(cached, stale=stale)
        meta = dict(result.meta or {})
        stored_tmdb = meta.get("tmdb")
        hit_limit = bool(stored_tmdb.get("hitLimit")) if isinstance(stored_tmdb, dict) else False
        meta["source"] = "cache"
        meta["tmdb"] = await self._tmdb_meta(hit_limit)
        result.meta = meta
        return result

    async def _reuse(
        self, kind: PoolKind, policy: HeroPolicy, policy_hash: str
    ) -> HeroPoolResult | None:
        now = self._clock()
        cached = await self._store.get_stored_pool(
            kind, now=now, policy_hash=policy_hash, allow_expired=True
        )
        if cached is None or not cached.items:
            return None
        if cached.is_expired:
            grace_ms = policy.cache.grace_ms
            if grace_ms > 0 and cached.expires_at + grace_ms > now:
                self._emit("cache", kind, status="grace", size=len(cached.items))
                return await self._from_cache(cached, stale=True)
            return None
        self._emit("cache", kind, status="hit", size=len(cached.items))
        return await self._from_cache(cached, stale=False)

    async def _build(
        self,
        kind: PoolKind,
        items: list[Mapping[str, Any]],
        *,
        force: bool,
        policy: HeroPolicy,
        options: EnrichOptions,
    ) -> HeroPoolResult:
        policy_hash = policy_signature(policy, kind)
        if not force:
            reused = await self._reuse(kind, policy, policy_hash)
            if reused is not None:
                return reused
        else:
            await asyncio.gather(
                self._store.clear_hero_memory(kind), self._store.clear_hero_failures(kind)
            )

        pool_size = policy.pool_size(kind)
        if pool_size <= 0:
            return HeroPoolResult(kind=kind, updated_at=self._clock(), expires_at=0)

        self._emit("start", kind, total=pool_size)
        slot_plan = compute_slot_plan(pool_size, policy.quotas())
        now = self._clock()
        memory_window = policy.cache.ttl_ms + policy.cache.grace_ms or BUILD_HISTORY_WINDOW_MS
        memory_limit = max(MEMORY_LIMIT, pool_size * 2)

        history = await self._store.get_hero_history(
            kind, now=now, window_ms=BUILD_HISTORY_WINDOW_MS, limit=BUILD_HISTORY_LIMIT
        )
        memory = await self._store.get_hero_memory(
            kind, now=now, window_ms=memory_window, limit=memory_limit
        )
        failures = await self._store.get_hero_failures(kind, now=now, window_ms=memory_window)

        candidates = prepare_candidates(items, now=now)
        context = self._plan(candidates, slot_plan, policy, history.ids, memory.ids, failures.ids)
        if len(context.selected) < pool_size and history.entries:
            fallback = await self._store.get_hero_history(
                kind, now=now, window_ms=FALLBACK_HISTORY_WINDOW_MS, limit=BUILD_HISTORY_LIMIT
            )
            context = self._plan(
                candidates, slot_plan, policy, fallback.ids, memory.ids, failures.ids
            )

        selection = context.selected[:pool_size]
        outcome = await self._normalize_selection(
            kind, selection, policy, options, failure_ttl_ms=memory_window
        )
        final_items = [item.to_payload() for item in outcome.items[:pool_size]]

        updated_at = self._clock()
        meta: dict[str, Any] = {
            "plan": slot_plan,
            "totalCandidates": len(items),
            "selectionCount": len(final_items),
            "source": "fresh",
            "tmdb": await self._tmdb_meta(outcome.rate_limit_hit),
        }
        if outcome.cancelled:
            # A partial pool is handed back once and never cached or remembered.
            meta["cancelled"] = True
            self._emit("cancelled", kind, size=len(final_items))
            logger.info(
                "Hero pool build for %s cancelled with %s/%s items",
                kind,
                len(final_items),
                pool_size,
            )
            return HeroPoolResult(
                kind=kind,
                items=final_items,
                updated_at=updated_at,
                expires_at=updated_at,
                policy_hash=policy_hash,
                slot_summary=dict(context.summary),
                meta=meta,
                from_cache=False,
            )

        stored = StoredPool(
            kind=kind,
            items=final_items,
            updated_at=updated_at,
            expires_at=updated_at + policy.cache.ttl_ms,
            policy_hash=policy_hash,
            slot_summary=dict(context.summary),
            meta=meta,
        )
        await self._store.record_hero_memory(
            kind, final_items, timestamp=updated_at, ttl_ms=memory_window, limit=memory_limit
        )
        await self._store.store_pool(kind, stored)
        self._emit("done", kind, size=len(final_items), extra={"updatedAt": updated_at})
        logger.info(
            "Built %s hero pool with %s/%s items from %s candidates",
            kind,
            len(final_items),
            pool_size,
            len(items),
        )
        return HeroPoolResult(
            kind=kind,
            items=final_items,
            updated_at=stored.updated_at,
            expires_at=stored.expires_at,
            policy_hash=policy_hash,
            slot_summary=stored.slot_summary,
            meta=stored.meta,
            from_cache=False,
        )

    def _plan(
        self,
        candidates: list[Candidate],
        slot_plan: dict[str, int],
        policy: HeroPolicy,
        history: set[str],
        memory: set[str],
        failures: set[str],
    ) -> SelectionContext:
        return plan(
            candidates,
            slot_plan,
            policy.diversity,
            history=history,
            memory=memory,
            failures=failures,
            rng=self._rng,
        )

    async def _normalize_selection(
        self,
        kind: PoolKind,
        selection: list[Candidate],
        policy: HeroPolicy,
        options: EnrichOptions,
        *,
        failure_ttl_ms: int,
    ) -> _NormalizeOutcome:
        """Normalize picks one at a time, keeping the selection order.

        Any cancellation marks the outcome as cancelled, whether it ended the
        loop or only skipped one item.
        """

        outcome = _NormalizeOutcome(items=[])
        total = len(selection)
        cancel_event = options.cancel_event
        for index, candidate in enumerate(selection, start=1):
            if cancel_event is not None and cancel_event.is_set() and options.stop_on_cancel:
                logger.info("Hero pool build for %s cancelled after %s items", kind, index - 1)
                outcome.cancelled = True
                break
            self._emit(
                "normalizing", kind, index=index, total=total, slot=candidate.slot, id=candidate.id
            )
            reason = ""
            rate_limited = False
            item: NormalizedHeroItem | None = None
            try:
                item = await self._normalizer.normalize(
                    candidate.raw,
                    language=policy.language or "en-US",
                    enrich=options.enrich,
                    text_clamp=policy.text_clamp,
                    credential=options.credential,
                    settings=options.settings,
                    force_refresh=options.force_refresh,
                    cancel_event=cancel_event,
                )
                if item is None:
                    raise NormalizeFailure(candidate.id, "no usable title")
            except EnrichmentCancelled:
                logger.info("Normalization of %s cancelled", candidate.id)
                outcome.cancelled = True
                if options.stop_on_cancel:
                    break
                continue
            except RateLimitError as exc:
                logger.warning("Hero candidate %s hit the TMDB rate limit: %s", candidate.id, exc)
                rate_limited = True
                outcome.rate_limit_hit = True
                reason = str(exc)
            except NormalizeFailure as exc:
                logger.warning("%s", exc)
                reason = exc.reason
            except HeroError as exc:
                logger.warning("Failed to normalize hero candidate %s: %s", candidate.id, exc)
                reason = str(exc)

            if item is None:
                if not rate_limited:
                    await self._store.record_hero_failure(
                        kind,
                        candidate.id,
                        timestamp=self._clock(),
                        ttl_ms=failure_ttl_ms,
                        reason=reason or "normalize",
                    )
                continue

            await self._store.resolve_hero_failure(kind, candidate.id)
            item.slot = candidate.slot
            item.pool_id = candidate.id
            outcome.rate_limit_hit = outcome.rate_limit_hit or item.rate_limit_hit
            outcome.items.append(item)
        return outcome
