"""Turn raw catalog items into render-ready hero entries."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

from ..errors import EnrichmentCancelled, HeroError, RateLimitError
from ..models import CallToAction, EnrichmentProvenance, NormalizedHeroItem
from ..policy import TextClampConfig
from ..utils import (
    clamp,
    clamp_text,
    clean_string,
    extract_external_ids,
    first_string,
    parse_year,
    to_number,
)
from .tmdb import Credential, DetailResult, TMDBClient, image_url, normalize_media_type

logger = logging.getLogger(__name__)

BACKDROP_MIN_WIDTH = 1920
BACKDROP_SIZE = "original"
MAX_GENRES = 2


def _minutes(value: Any) -> int | None:
    number = to_number(value)
    if number is None or number <= 0:
        return None
    # Media servers report durations in milliseconds.
    if number > 1000:
        return max(1, round(number / 60_000))
    return round(number)


def _rating(value: Any) -> float | None:
    number = to_number(value)
    if number is None or number <= 0:
        return None
    return clamp(round(number, 1), 0, 10)


def _genres(raw: Mapping[str, Any], tmdb: Mapping[str, Any] | None) -> list[str]:
    names: list[str] = []
    if tmdb and isinstance(tmdb.get("genres"), list):
        for entry in tmdb["genres"]:
            if isinstance(entry, Mapping):
                name = clean_string(entry.get("name"))
                if name:
                    names.append(name)
    raw_genres = raw.get("genres")
    if isinstance(raw_genres, list):
        for entry in raw_genres:
            if isinstance(entry, str):
                name = clean_string(entry)
            elif isinstance(entry, Mapping):
                name = first_string(
                    entry.get("tag"), entry.get("title"), entry.get("label"), entry.get("name")
                )
            else:
                continue
            if name:
                names.append(name)

    seen: set[str] = set()
    result: list[str] = []
    for name in names:
        key = name.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(name)
    return result[:MAX_GENRES]


def _year(raw: Mapping[str, Any], tmdb: Mapping[str, Any] | None, media_type: str) -> int | None:
    if tmdb:
        primary = tmdb.get("first_air_date") if media_type == "tv" else tmdb.get("release_date")
        year = parse_year(primary)
        if year:
            return year
        if media_type == "tv":
            year = parse_year(tmdb.get("last_air_date"))
            if year:
                return year
    return parse_year(raw.get("year")) or parse_year(raw.get("originallyAvailableAt"))


def _runtime(raw: Mapping[str, Any], tmdb: Mapping[str, Any] | None, media_type: str) -> int | None:
    if tmdb:
        if media_type == "tv" and isinstance(tmdb.get("episode_run_time"), list):
            for value in tmdb["episode_run_time"]:
                minutes = _minutes(value)
                if minutes:
                    return minutes
        if media_type == "movie":
            minutes = _minutes(tmdb.get("runtime"))
            if minutes:
                return minutes
    if media_type == "tv" and isinstance(raw.get("seasons"), list):
        for season in raw["seasons"]:
            episodes = season.get("episodes") if isinstance(season, Mapping) else None
            if not isinstance(episodes, list):
                continue
            for episode in episodes:
                if not isinstance(episode, Mapping):
                    continue
                minutes = _minutes(episode.get("durationMin") or episode.get("duration"))
                if minutes:
                    return minutes
    return _minutes(raw.get("durationMin") or raw.get("duration"))


def _certification(
    raw: Mapping[str, Any], tmdb: Mapping[str, Any] | None, media_type: str
) -> str:
    if media_type == "movie" and tmdb and isinstance(tmdb.get("release_dates"), Mapping):
        releases = tmdb["release_dates"].get("results") or []
        us = next(
            (entry for entry in releases if isinstance(entry, Mapping) and entry.get("iso_3166_1") == "US"),
            None,
        )
        dates = us.get("release_dates") if us else None
        certified = sorted(
            (
                entry
                for entry in (dates or [])
                if isinstance(entry, Mapping) and clean_string(entry.get("certification"))
            ),
            key=lambda entry: to_number(entry.get("type")) or 0,
        )
        if certified:
            theatrical = next((entry for entry in certified if entry.get("type") == 3), None)
            return clean_string((theatrical or certified[0]).get("certification"))
    if media_type == "tv" and tmdb and isinstance(tmdb.get("content_ratings"), Mapping):
        for entry in tmdb["content_ratings"].get("results") or []:
            if isinstance(entry, Mapping) and entry.get("iso_3166_1") == "US":
                rating = clean_string(entry.get("rating"))
                if rating:
                    return rating
    content_rating = clean_string(raw.get("contentRating"))
    if content_rating:
        return clean_string(content_rating.split("/")[-1])
    return ""


def _backdrops(tmdb: Mapping[str, Any] | None) -> list[str]:
    images = tmdb.get("images") if tmdb else None
    backdrops = images.get("backdrops") if isinstance(images, Mapping) else None
    urls: list[str] = []
    for backdrop in backdrops or []:
        if not isinstance(backdrop, Mapping) or not backdrop.get("file_path"):
            continue
        width = to_number(backdrop.get("width"))
        if width and width < BACKDROP_MIN_WIDTH:
            continue
        url = image_url(backdrop["file_path"], BACKDROP_SIZE)
        if url and url not in urls:
            urls.append(url)
    return urls


def _tv_counts(
    raw: Mapping[str, Any], tmdb: Mapping[str, Any] | None
) -> tuple[int | None, int | None]:
    seasons = to_number(tmdb.get("number_of_seasons")) if tmdb else None
    episodes = to_number(tmdb.get("number_of_episodes")) if tmdb else None
    raw_seasons = raw.get("seasons") if isinstance(raw.get("seasons"), list) else None
    if seasons is None and raw_seasons is not None:
        seasons = len(raw_seasons)
    if episodes is None and raw_seasons is not None:
        count = sum(
            len(season["episodes"])
            for season in raw_seasons
            if isinstance(season, Mapping) and isinstance(season.get("episodes"), list)
        )
        episodes = count or None
    return (
        max(0, round(seasons)) if seasons is not None else None,
        max(0, round(episodes)) if episodes is not None else None,
    )


def build_cta(media_type: str, ids: Mapping[str, str]) -> CallToAction | None:
    target_id = first_string(ids.get("tmdb"), ids.get("imdb"), ids.get("ratingKey"))
    if not target_id:
        return None
    kind = "show" if media_type == "tv" else "movie"
    return CallToAction(
        id=target_id,
        kind=kind,
        label="Show details" if kind == "show" else "Movie details",
        target=f"#/{kind}/{target_id}",
    )


class HeroNormalizer:
    """Maps raw catalog items plus optional TMDB details onto :class:`NormalizedHeroItem`."""

    def __init__(
        self,
        tmdb_client: TMDBClient | None = None,
        *,
        text_clamp: TextClampConfig | None = None,
    ) -> None:
        self._tmdb = tmdb_client
        self._text_clamp = text_clamp

    async def normalize(
        self,
        raw: Mapping[str, Any],
        *,
        language: str = "en-US",
        enrich: bool = True,
        text_clamp: TextClampConfig | None = None,
        credential: Credential | str | None = None,
        settings: Mapping[str, Any] | None = None,
        force_refresh: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> NormalizedHeroItem | None:
        """Return the hero entry for ``raw`` or ``None`` when it has no title.

        Cancellation propagates to the caller. Any other enrichment problem,
        rate limiting included, is logged and the raw fields are used
        instead; a throttled lookup sets ``rate_limit_hit`` on the result.
        """

        if not isinstance(raw, Mapping):
            return None
        media_type = normalize_media_type(raw.get("type"))
        language = clean_string(language) or "en-US"
        ids = extract_external_ids(dict(raw))

        detail: DetailResult | None = None
        rate_limited = False
        if enrich and self._tmdb is not None:
            try:
                detail = await self._tmdb.fetch_details_for_item(
                    raw,
                    language=language,
                    force_refresh=force_refresh,
                    credential=credential,
                    settings=settings,
                    cancel_event=cancel_event,
                )
            except EnrichmentCancelled:
                raise
            except RateLimitError as exc:
                logger.warning(
                    "TMDB rate limited while enriching %s, using raw fields: %s",
                    raw.get("title") or ids or "item",
                    exc,
                )
                rate_limited = True
            except HeroError as exc:
                logger.warning(
                    "TMDB lookup failed for %s: %s", raw.get("title") or ids or "item", exc
                )
        tmdb = detail.data if detail else None
        if detail is not None:
            ids.setdefault("tmdb", detail.id)
        if tmdb:
            if tmdb.get("id") is not None:
                ids.setdefault("tmdb", str(tmdb["id"]))
            imdb_id = clean_string(tmdb.get("imdb_id"))
            if imdb_id:
                ids.setdefault("imdb", imdb_id)

        if tmdb:
            if media_type == "tv":
                tmdb_title = first_string(tmdb.get("name"), tmdb.get("original_name"))
            else:
                tmdb_title = first_string(tmdb.get("title"), tmdb.get("original_title"))
        else:
            tmdb_title = ""
        title = tmdb_title or first_string(raw.get("title"), raw.get("name"), raw.get("originalTitle"))
        if not title:
            logger.warning(
                "Skipping hero item without title (%s)",
                raw.get("ratingKey") or raw.get("guid") or "unknown",
            )
            return None

        clamp_config = text_clamp or self._text_clamp or TextClampConfig()
        tmdb_data: Mapping[str, Any] = tmdb or {}
        item_id = (
            ids.get("ratingKey")
            or (f"{media_type}-{ids['tmdb']}" if ids.get("tmdb") else "")
            or (f"{media_type}-{ids['imdb']}" if ids.get("imdb") else "")
            or str(raw.get("guid") or title)
        )
        vote_count = to_number(tmdb_data.get("vote_count"))
        seasons, episodes = _tv_counts(raw, tmdb) if media_type == "tv" else (None, None)

        item = NormalizedHeroItem(
            id=item_id,
            type=media_type,
            title=clamp_text(title, clamp_config.title),
            tagline=clamp_text(
                first_string(tmdb_data.get("tagline"), raw.get("tagline")), clamp_config.subtitle
            )
            or None,
            overview=clamp_text(
                first_string(
                    tmdb_data.get("overview"),
                    raw.get("summary"),
                    raw.get("plot"),
                    raw.get("description"),
                ),
                clamp_config.summary,
            )
            or None,
            year=_year(raw, tmdb, media_type),
            runtime=_runtime(raw, tmdb, media_type),
            rating=_rating(tmdb_data.get("vote_average"))
            or _rating(raw.get("rating") or raw.get("audienceRating")),
            vote_count=round(vote_count) if vote_count and vote_count > 0 else None,
            genres=_genres(raw, tmdb),
            certification=_certification(raw, tmdb, media_type) or None,
            backdrops=_backdrops(tmdb),
            seasons=seasons,
            episodes=episodes,
            cta=build_cta(media_type, ids),
            ids=ids,
            language=language,
            rate_limit_hit=rate_limited,
        )
        if detail is not None:
            item.tmdb = EnrichmentProvenance(
                id=ids.get("tmdb") or detail.id,
                fetched_at=detail.fetched_at,
                source=detail.source,
            )
        return item
