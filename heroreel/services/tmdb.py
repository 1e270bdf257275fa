"""Client for enriching hero items with metadata from The Movie Database (TMDB)."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Literal, Mapping

import httpx

from ..config import Settings
from ..errors import (
    EnrichmentCancelled,
    HeroError,
    ProviderAuthError,
    ProviderResponseError,
    RateLimitError,
    TransientNetworkError,
)
from ..utils import clean_string, extract_external_ids, now_ms, parse_config_text, parse_year
from .kv import KeyValueStore
from .rate_limit import RateLimitBreaker

logger = logging.getLogger(__name__)

CACHE_STORAGE_KEY = "hero.tmdbCache.v1"
IMAGE_BASE_URL = "https://image.tmdb.org/t/p/"
APPEND_TO_RESPONSE = "images,release_dates,content_ratings,credits"
API_KEY_RE = re.compile(r"^[0-9a-f]{32}$", re.IGNORECASE)
BACKOFF_BASE_MS = 300
BACKOFF_CAP_MS = 2_000

MediaType = Literal["movie", "tv"]
CredentialKind = Literal["bearer", "apikey"]


@dataclass(frozen=True, slots=True)
class Credential:
    """A TMDB credential together with where it was found."""

    kind: CredentialKind
    value: str
    source: str = "explicit"


@dataclass(slots=True)
class DetailResult:
    """Detail payload for one TMDB title."""

    type: MediaType
    id: str
    language: str
    data: dict[str, Any]
    fetched_at: int
    source: Literal["cache", "network"]


@dataclass(slots=True)
class _CacheEntry:
    ts: int
    data: dict[str, Any]


def classify_credential(value: Any, *, source: str = "explicit") -> Credential | None:
    """Treat 32 hex digits as a v3 API key and anything else as a bearer token."""

    if isinstance(value, Credential):
        return value
    text = clean_string(value)
    if not text:
        return None
    if text.lower().startswith("bearer "):
        return Credential("bearer", text[7:].strip(), source)
    kind: CredentialKind = "apikey" if API_KEY_RE.match(text) else "bearer"
    return Credential(kind, text, source)


def normalize_media_type(value: Any) -> MediaType:
    text = clean_string(value).lower()
    if text in {"tv", "show", "shows", "series", "episode", "season"}:
        return "tv"
    return "movie"


def backoff_delay_ms(attempt: int) -> int:
    return min(BACKOFF_CAP_MS, BACKOFF_BASE_MS * (2**attempt))


def parse_retry_after(value: str | None, now: int) -> int:
    """Return the ``Retry-After`` header as a delay in milliseconds."""

    text = clean_string(value)
    if not text:
        return 0
    try:
        return max(0, int(float(text) * 1000))
    except ValueError:
        pass
    try:
        moment = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return 0
    return max(0, int(moment.timestamp() * 1000) - now)


def image_url(path: str | None, size: str = "original") -> str:
    if not path:
        return ""
    if path.startswith("http"):
        return path
    return f"{IMAGE_BASE_URL}{size}{path}"


ConfigLoader = Callable[[], Awaitable[Mapping[str, Any]]]
TokenProvider = Callable[[], Awaitable[str | None]]


class TMDBClient:
    """Throttled, rate-limit aware TMDB client with a bounded response cache.

    All state (breaker, cache, throttle clock) belongs to the instance, so
    tests can create isolated clients with a fake ``clock`` and ``sleep``.
    When ``cache_store`` is given the response cache is loaded from it on
    first use and written back after every change.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        *,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        config_loader: ConfigLoader | None = None,
        token_provider: TokenProvider | None = None,
        breaker: RateLimitBreaker | None = None,
        cache_store: KeyValueStore | None = None,
    ) -> None:
        self._settings = settings
        self._client = http_client
        self._clock = clock
        self._sleep = sleep
        self._config_loader = config_loader or self._load_remote_config
        self._token_provider = token_provider
        self.breaker = breaker or RateLimitBreaker(clock=clock)
        self._min_interval_ms = settings.tmdb_min_request_interval_ms
        self._max_retries = settings.tmdb_max_retries
        self._max_rate_limit_wait_ms = settings.tmdb_max_rate_limit_wait_ms
        self._cache_ttl_ms = settings.tmdb_cache_ttl_seconds * 1000
        self._cache_max_entries = settings.tmdb_cache_max_entries
        self._cache: dict[tuple[str, str, str], _CacheEntry] = {}
        self._cache_store = cache_store
        self._cache_loaded = cache_store is None
        self._cache_lock = asyncio.Lock()
        self._throttle_lock = asyncio.Lock()
        self._last_request_at: int | None = None
        self._remote_config: Mapping[str, Any] | None = None
        self._remote_config_lock = asyncio.Lock()
        self._rejected: set[str] = set()

    @property
    def settings(self) -> Settings:
        return self._settings

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------
    async def resolve_credential(
        self,
        explicit: Credential | str | None = None,
        settings: Mapping[str, Any] | None = None,
    ) -> Credential | None:
        """Return the first usable credential, or ``None`` when enrichment is disabled."""

        for candidate in await self._credential_candidates(explicit, settings):
            if candidate is not None and candidate.value not in self._rejected:
                return candidate
        return None

    async def has_credentials(self) -> bool:
        return await self.resolve_credential() is not None

    async def _credential_candidates(
        self,
        explicit: Credential | str | None,
        settings: Mapping[str, Any] | None,
    ) -> list[Credential | None]:
        candidates: list[Credential | None] = [classify_credential(explicit)]
        if settings:
            candidates.append(classify_credential(settings.get("tmdbToken"), source="settings"))
            api_key = clean_string(settings.get("tmdbApiKey"))
            if api_key:
                candidates.append(Credential("apikey", api_key, "settings"))
        candidates.append(classify_credential(self._settings.tmdb_token, source="token"))
        if self._settings.tmdb_api_key:
            candidates.append(Credential("apikey", self._settings.tmdb_api_key, "token"))
        if self._token_provider is not None:
            candidates.append(
                classify_credential(await self._token_provider(), source="token-store")
            )
        if any(c is not None and c.value not in self._rejected for c in candidates):
            return candidates
        config = await self.remote_config()
        candidates.append(
            classify_credential(
                config.get("tmdbToken") or config.get("TMDB_TOKEN"), source="config"
            )
        )
        config_key = clean_string(config.get("tmdbApiKey") or config.get("TMDB_API_KEY"))
        if config_key:
            candidates.append(Credential("apikey", config_key, "config"))
        candidates.append(
            classify_credential(self._settings.tmdb_fallback_credential, source="fallback")
        )
        return candidates

    async def remote_config(self) -> Mapping[str, Any]:
        """Return the remote ``config.cfg`` values, loading them only once."""

        if self._remote_config is not None:
            return self._remote_config
        async with self._remote_config_lock:
            if self._remote_config is None:
                self._remote_config = await self._config_loader()
        return self._remote_config

    async def _load_remote_config(self) -> Mapping[str, Any]:
        url = self._settings.tmdb_config_url
        if not url:
            return {}
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            logger.warning("Unable to load TMDB config from %s: %s", url, exc)
            return {}
        if response.status_code == 404:
            return {}
        if response.status_code >= 400:
            logger.warning(
                "Unable to load TMDB config from %s (status=%s)", url, response.status_code
            )
            return {}
        return parse_config_text(response.text)

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------
    def get_cached(self, media_type: str, tmdb_id: Any, language: str) -> DetailResult | None:
        key = (normalize_media_type(media_type), str(tmdb_id), language)
        entry = self._cache.get(key)
        if entry is None:
            return None
        if self._clock() - entry.ts > self._cache_ttl_ms:
            del self._cache[key]
            return None
        return DetailResult(
            type=key[0], id=key[1], language=language, data=entry.data,
            fetched_at=entry.ts, source="cache",
        )

    async def clear_cache(self) -> None:
        self._cache.clear()
        self._cache_loaded = True
        if self._cache_store is not None:
            result = await self._cache_store.remove(CACHE_STORAGE_KEY)
            if not result.ok:
                logger.warning("Failed to clear stored TMDB cache: %s", result.error)

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    async def load_cache(self) -> None:
        """Merge the persisted response cache into memory, once."""

        if self._cache_loaded:
            return
        async with self._cache_lock:
            if self._cache_loaded:
                return
            self._cache_loaded = True
            if self._cache_store is None:
                return
            result = await self._cache_store.get(CACHE_STORAGE_KEY)
            if not result.ok:
                if result.status != "missing":
                    logger.warning("Failed to read TMDB cache from storage: %s", result.error)
                return
            try:
                entries = json.loads(result.value or "[]")
            except ValueError as exc:
                logger.warning("Stored TMDB cache is not valid JSON: %s", exc)
                return
            now = self._clock()
            for entry in entries if isinstance(entries, list) else []:
                if not isinstance(entry, list) or len(entry) != 2:
                    continue
                key, body = entry
                if not isinstance(key, list) or len(key) != 3 or not isinstance(body, dict):
                    continue
                ts, data = body.get("ts"), body.get("data")
                if not isinstance(ts, int) or not isinstance(data, dict):
                    continue
                if now - ts > self._cache_ttl_ms:
                    continue
                cache_key = (str(key[0]), str(key[1]), str(key[2]))
                if cache_key not in self._cache:
                    self._cache[cache_key] = _CacheEntry(ts=ts, data=data)
            self._prune_overflow()
            logger.debug("Loaded %s TMDB cache entries from storage", len(self._cache))

    async def _persist_cache(self) -> None:
        if self._cache_store is None:
            return
        entries = [
            [list(key), {"ts": entry.ts, "data": entry.data}]
            for key, entry in self._cache.items()
        ]
        result = await self._cache_store.set(CACHE_STORAGE_KEY, json.dumps(entries))
        if not result.ok:
            logger.warning("Failed to persist TMDB cache: %s", result.error)

    def _store_cached(self, key: tuple[str, str, str], data: dict[str, Any], ts: int) -> None:
        self._cache[key] = _CacheEntry(ts=ts, data=data)
        self._prune_overflow()

    def _prune_overflow(self) -> None:
        overflow = len(self._cache) - self._cache_max_entries
        if overflow <= 0:
            return
        oldest = sorted(self._cache.items(), key=lambda item: item[1].ts)[:overflow]
        for stale_key, _ in oldest:
            del self._cache[stale_key]

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    async def fetch_details(
        self,
        media_type: str,
        tmdb_id: Any,
        language: str = "en-US",
        *,
        force_refresh: bool = False,
        credential: Credential | str | None = None,
        settings: Mapping[str, Any] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> DetailResult | None:
        """Return the detail payload for a TMDB id, served from cache when fresh."""

        kind = normalize_media_type(media_type)
        identifier = clean_string(str(tmdb_id)) if tmdb_id is not None else ""
        if not identifier:
            return None
        await self.load_cache()
        if not force_refresh:
            cached = self.get_cached(kind, identifier, language)
            if cached is not None:
                return cached

        resolved = await self.resolve_credential(credential, settings)
        if resolved is None:
            logger.debug("TMDB enrichment disabled: no credential available")
            return None

        data = await self._request_json(
            f"/{kind}/{identifier}",
            {"language": language, "append_to_response": APPEND_TO_RESPONSE},
            resolved,
            cancel_event,
        )
        fetched_at = self._clock()
        self._store_cached((kind, identifier, language), data, fetched_at)
        await self._persist_cache()
        return DetailResult(
            type=kind, id=identifier, language=language, data=data,
            fetched_at=fetched_at, source="network",
        )

    async def fetch_details_for_item(
        self,
        raw: Mapping[str, Any],
        *,
        language: str = "en-US",
        force_refresh: bool = False,
        credential: Credential | str | None = None,
        settings: Mapping[str, Any] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> DetailResult | None:
        """Resolve a raw catalog item by TMDB id, then IMDb id, then title search."""

        media_type = normalize_media_type(raw.get("type"))
        ids = extract_external_ids(dict(raw))
        resolved = await self.resolve_credential(credential, settings)
        if resolved is None:
            return None
        options = {
            "force_refresh": force_refresh,
            "credential": resolved,
            "cancel_event": cancel_event,
        }

        async def _direct() -> DetailResult | None:
            if not ids.get("tmdb"):
                return None
            return await self.fetch_details(media_type, ids["tmdb"], language, **options)

        async def _by_imdb() -> DetailResult | None:
            if not ids.get("imdb"):
                return None
            match = await self._find_by_imdb(ids["imdb"], media_type, language, resolved, cancel_event)
            if match is None:
                return None
            return await self.fetch_details(match[0], match[1], language, **options)

        async def _by_title() -> DetailResult | None:
            title = clean_string(raw.get("title")) or clean_string(raw.get("name"))
            if not title:
                return None
            year = parse_year(raw.get("year") or raw.get("originallyAvailableAt"))
            tmdb_id = await self._search(title, media_type, year, language, resolved, cancel_event)
            if tmdb_id is None:
                return None
            return await self.fetch_details(media_type, tmdb_id, language, **options)

        for name, strategy in (("tmdb", _direct), ("imdb", _by_imdb), ("search", _by_title)):
            try:
                result = await strategy()
            except (RateLimitError, EnrichmentCancelled):
                raise
            except HeroError as exc:
                logger.warning(
                    "TMDB %s lookup failed for %s: %s",
                    name,
                    raw.get("title") or ids,
                    exc,
                )
                continue
            if result is not None:
                return result
        return None

    async def _find_by_imdb(
        self,
        imdb_id: str,
        media_type: MediaType,
        language: str,
        credential: Credential,
        cancel_event: asyncio.Event | None,
    ) -> tuple[MediaType, str] | None:
        payload = await self._request_json(
            f"/find/{imdb_id}",
            {"external_source": "imdb_id", "language": language},
            credential,
            cancel_event,
        )
        preferred = "movie_results" if media_type == "movie" else "tv_results"
        fallback = "tv_results" if media_type == "movie" else "movie_results"
        for key in (preferred, fallback):
            results = payload.get(key)
            if isinstance(results, list) and results and results[0].get("id") is not None:
                found_type: MediaType = "movie" if key == "movie_results" else "tv"
                return found_type, str(results[0]["id"])
        return None

    async def _search(
        self,
        title: str,
        media_type: MediaType,
        year: int | None,
        language: str,
        credential: Credential,
        cancel_event: asyncio.Event | None,
    ) -> str | None:
        """Return the id of the best search match for the supplied title."""

        params: dict[str, Any] = {
            "query": title,
            "include_adult": "false",
            "language": language,
            "page": 1,
        }
        if year:
            if media_type == "movie":
                params["year"] = year
            else:
                params["first_air_date_year"] = year

        payload = await self._request_json(
            f"/search/{media_type}", params, credential, cancel_event
        )
        results = payload.get("results") or []
        normalized_title = title.casefold()
        best_match: dict[str, Any] | None = None

        for candidate in results:
            if not isinstance(candidate, dict) or candidate.get("id") is None:
                continue
            candidate_title = candidate.get("title") or candidate.get("name")
            if not candidate_title:
                continue
            candidate_year = self._extract_year(candidate, media_type)
            if candidate_title.casefold() == normalized_title:
                if year is None or candidate_year == year:
                    best_match = candidate
                    break
            if best_match is None:
                best_match = candidate
            elif year is not None and candidate_year == year:
                best_match = candidate

        if not best_match:
            return None
        return str(best_match["id"])

    @staticmethod
    def _extract_year(result: dict[str, Any], media_type: str) -> int | None:
        date_key = "release_date" if media_type == "movie" else "first_air_date"
        date_value = result.get(date_key)
        if not isinstance(date_value, str) or len(date_value) < 4:
            return None
        try:
            return int(date_value[:4])
        except ValueError:
            return None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    async def _request_json(
        self,
        path: str,
        params: dict[str, Any],
        credential: Credential,
        cancel_event: asyncio.Event | None,
    ) -> dict[str, Any]:
        """Issue a throttled GET with retries and return the decoded body."""

        query = dict(params)
        headers = {"Accept": "application/json"}
        if credential.kind == "apikey":
            query["api_key"] = credential.value
        else:
            headers["Authorization"] = f"Bearer {credential.value}"

        attempt = 0
        while True:
            self._check_cancelled(cancel_event)
            await self._throttle(cancel_event)
            try:
                response = await self._race(
                    self._client.get(path, params=query, headers=headers), cancel_event
                )
            except httpx.HTTPError as exc:
                if attempt >= self._max_retries:
                    raise TransientNetworkError(f"TMDB request to {path} failed: {exc}") from exc
                delay = backoff_delay_ms(attempt)
                attempt += 1
                logger.info(
                    "Retrying TMDB request %s after network error in %sms (attempt %s/%s)",
                    path,
                    delay,
                    attempt,
                    self._max_retries,
                )
                await self._pause(delay, cancel_event)
                continue

            status = response.status_code
            if status == 429:
                retry_after = parse_retry_after(
                    response.headers.get("Retry-After"), self._clock()
                )
                state = self.breaker.register_hit(status, retry_after)
                if attempt >= self._max_retries:
                    raise RateLimitError(
                        "TMDB rate limit exceeded",
                        retry_after_ms=state.retry_after_ms,
                        until=state.until,
                    )
                attempt += 1
                logger.info(
                    "TMDB throttled %s, waiting %sms (attempt %s/%s)",
                    path,
                    state.retry_after_ms,
                    attempt,
                    self._max_retries,
                )
                continue
            if status >= 500:
                self.breaker.register_strike(status)
                if attempt >= self._max_retries:
                    raise TransientNetworkError(f"TMDB request to {path} failed with {status}")
                delay = backoff_delay_ms(attempt)
                attempt += 1
                logger.info(
                    "Retrying TMDB request %s after status %s in %sms (attempt %s/%s)",
                    path,
                    status,
                    delay,
                    attempt,
                    self._max_retries,
                )
                await self._pause(delay, cancel_event)
                continue
            if status in (401, 403):
                self._rejected.add(credential.value)
                logger.warning(
                    "TMDB rejected %s credential from %s (status=%s)",
                    credential.kind,
                    credential.source,
                    status,
                )
                raise ProviderAuthError(status)
            if status >= 400:
                raise ProviderResponseError(status, response.text)
            try:
                payload = response.json()
            except ValueError as exc:
                raise ProviderResponseError(status, "invalid JSON body") from exc
            if not isinstance(payload, dict):
                raise ProviderResponseError(status, "unexpected JSON body")
            return payload

    async def _throttle(self, cancel_event: asyncio.Event | None) -> None:
        """Wait for the minimum request interval and any rate-limit window."""

        async with self._throttle_lock:
            while True:
                now = self._clock()
                penalty = self.breaker.remaining_ms(now)
                if penalty > self._max_rate_limit_wait_ms:
                    state = self.breaker.state
                    raise RateLimitError(
                        "TMDB rate limit active",
                        retry_after_ms=penalty,
                        until=state.until,
                    )
                interval = 0
                if self._last_request_at is not None:
                    interval = self._min_interval_ms - (now - self._last_request_at)
                wait = max(penalty, interval)
                if wait <= 0:
                    break
                await self._pause(wait, cancel_event)
            self._last_request_at = self._clock()

    async def _pause(self, delay_ms: int, cancel_event: asyncio.Event | None) -> None:
        await self._race(self._sleep(delay_ms / 1000), cancel_event)

    async def _race(self, awaitable: Awaitable[Any], cancel_event: asyncio.Event | None) -> Any:
        """Await ``awaitable`` unless ``cancel_event`` fires first."""

        if cancel_event is None:
            return await awaitable
        self._check_cancelled(cancel_event)
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if not task.done():
            task.cancel()
            raise EnrichmentCancelled("TMDB request cancelled")
        return task.result()

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise EnrichmentCancelled("TMDB request cancelled")
