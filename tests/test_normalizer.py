from __future__ import annotations

from typing import Any

import pytest

from heroreel.errors import EnrichmentCancelled, ProviderResponseError, RateLimitError
from heroreel.policy import TextClampConfig
from heroreel.services.normalizer import HeroNormalizer, build_cta
from heroreel.services.tmdb import DetailResult


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


class StubTMDB:
    def __init__(self, result: DetailResult | None = None, error: Exception | None = None):
        self.result = result
        self.error = error
        self.calls: list[dict[str, Any]] = []

    async def fetch_details_for_item(self, raw: Any, **kwargs: Any) -> DetailResult | None:
        self.calls.append({"raw": raw, **kwargs})
        if self.error is not None:
            raise self.error
        return self.result


RAW_MOVIE = {
    "ratingKey": "42",
    "type": "movie",
    "title": "Heat (raw)",
    "guid": "tmdb://949",
    "duration": 10_200_000,
    "contentRating": "gb/15",
    "rating": 7.84,
    "summary": "Raw summary",
    "genres": [{"tag": "action"}, {"tag": "Thriller"}],
}

HEAT_DETAILS = {
    "id": 949,
    "title": "Heat",
    "imdb_id": "tt0113277",
    "tagline": "A Los Angeles crime saga",
    "overview": "Obsessive master thief Neil McCauley leads a top-notch crew.",
    "release_date": "1995-12-15",
    "runtime": 170,
    "vote_average": 8.27,
    "vote_count": 6000,
    "genres": [{"name": "Action"}, {"name": "Crime"}, {"name": "Drama"}],
    "release_dates": {
        "results": [
            {"iso_3166_1": "DE", "release_dates": [{"type": 3, "certification": "16"}]},
            {
                "iso_3166_1": "US",
                "release_dates": [
                    {"type": 4, "certification": "R"},
                    {"type": 1, "certification": ""},
                    {"type": 3, "certification": "PG-13"},
                ],
            },
        ]
    },
    "images": {
        "backdrops": [
            {"file_path": "/wide.jpg", "width": 3840},
            {"file_path": "/small.jpg", "width": 1280},
            {"file_path": "/wide.jpg", "width": 3840},
        ]
    },
}


def heat_detail() -> DetailResult:
    return DetailResult(
        type="movie",
        id="949",
        language="en-US",
        data=HEAT_DETAILS,
        fetched_at=1_700,
        source="network",
    )


@pytest.mark.anyio("asyncio")
async def test_normalize_prefers_tmdb_details() -> None:
    stub = StubTMDB(result=heat_detail())
    normalizer = HeroNormalizer(stub)  # type: ignore[arg-type]

    item = await normalizer.normalize(RAW_MOVIE, language="en-US")

    assert item is not None
    assert item.id == "42"
    assert item.type == "movie"
    assert item.title == "Heat"
    assert item.tagline == "A Los Angeles crime saga"
    assert item.year == 1995
    assert item.runtime == 170
    assert item.rating == 8.3
    assert item.vote_count == 6000
    assert item.genres == ["Action", "Crime"]
    assert item.certification == "PG-13"
    assert item.backdrops == ["https://image.tmdb.org/t/p/original/wide.jpg"]
    assert item.ids == {"ratingKey": "42", "tmdb": "949", "imdb": "tt0113277"}
    assert item.cta is not None
    assert item.cta.target == "#/movie/949"
    assert item.cta.label == "Movie details"
    assert item.tmdb is not None
    assert item.tmdb.id == "949"
    assert item.tmdb.source == "network"
    assert item.tmdb.fetched_at == 1_700

    payload = item.to_payload()
    assert payload["voteCount"] == 6000
    assert payload["tmdb"]["fetchedAt"] == 1_700
    assert "seasons" not in payload


@pytest.mark.anyio("asyncio")
async def test_normalize_falls_back_to_raw_fields_on_provider_error() -> None:
    stub = StubTMDB(error=ProviderResponseError(404, "not found"))
    normalizer = HeroNormalizer(stub)  # type: ignore[arg-type]

    item = await normalizer.normalize(RAW_MOVIE)

    assert item is not None
    assert item.title == "Heat (raw)"
    assert item.runtime == 170
    assert item.rating == 7.8
    assert item.certification == "15"
    assert item.overview == "Raw summary"
    assert item.genres == ["action", "Thriller"]
    assert item.backdrops == []
    assert item.tmdb is None
    assert len(stub.calls) == 1


@pytest.mark.anyio("asyncio")
async def test_rate_limited_lookup_keeps_the_raw_item() -> None:
    stub = StubTMDB(error=RateLimitError("slow down", retry_after_ms=1_000, until=5_000))
    normalizer = HeroNormalizer(stub)  # type: ignore[arg-type]

    item = await normalizer.normalize(RAW_MOVIE)

    assert item is not None
    assert item.title == "Heat (raw)"
    assert item.tmdb is None
    assert item.rate_limit_hit is True
    assert "rateLimitHit" not in item.to_payload()


@pytest.mark.anyio("asyncio")
async def test_cancelled_lookup_propagates() -> None:
    stub = StubTMDB(error=EnrichmentCancelled("stop"))
    normalizer = HeroNormalizer(stub)  # type: ignore[arg-type]

    with pytest.raises(EnrichmentCancelled):
        await normalizer.normalize(RAW_MOVIE)


@pytest.mark.anyio("asyncio")
async def test_enrich_disabled_skips_provider() -> None:
    stub = StubTMDB(result=heat_detail())
    normalizer = HeroNormalizer(stub)  # type: ignore[arg-type]

    item = await normalizer.normalize(RAW_MOVIE, enrich=False)

    assert item is not None
    assert item.title == "Heat (raw)"
    assert stub.calls == []


@pytest.mark.anyio("asyncio")
async def test_items_without_title_are_dropped() -> None:
    normalizer = HeroNormalizer()

    assert await normalizer.normalize({"ratingKey": "1", "type": "movie"}) is None
    assert await normalizer.normalize({"ratingKey": "2", "name": "  "}, enrich=False) is None


@pytest.mark.anyio("asyncio")
async def test_text_is_clamped_with_ellipsis() -> None:
    normalizer = HeroNormalizer(text_clamp=TextClampConfig(title=5, summary=10))

    item = await normalizer.normalize(RAW_MOVIE, enrich=False)

    assert item is not None
    assert item.title == "Heat…"
    assert item.overview == "Raw summa…"

    wider = await normalizer.normalize(
        RAW_MOVIE, enrich=False, text_clamp=TextClampConfig(title=50)
    )
    assert wider is not None
    assert wider.title == "Heat (raw)"


@pytest.mark.anyio("asyncio")
async def test_series_counts_and_identifier() -> None:
    normalizer = HeroNormalizer()
    raw = {
        "type": "show",
        "title": "Severance",
        "ids": {"imdb": "tt11280740"},
        "contentRating": "TV-MA",
        "seasons": [
            {"episodes": [{"duration": 2_700_000}, {}]},
            {"episodes": [{}]},
        ],
    }

    item = await normalizer.normalize(raw)

    assert item is not None
    assert item.type == "tv"
    assert item.id == "tv-tt11280740"
    assert item.seasons == 2
    assert item.episodes == 3
    assert item.runtime == 45
    assert item.certification == "TV-MA"
    assert item.cta is not None
    assert item.cta.kind == "show"
    assert item.cta.target == "#/show/tt11280740"


def test_build_cta_requires_an_identifier() -> None:
    assert build_cta("movie", {}) is None
    cta = build_cta("tv", {"ratingKey": "77"})
    assert cta is not None
    assert cta.label == "Show details"
    assert cta.target == "#/show/77"
