"""Pydantic models describing hero pool payloads."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

HeroType = Literal["movie", "tv"]


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CallToAction(_CamelModel):
    """Where the spotlight's primary button should lead."""

    id: str
    kind: Literal["movie", "show"]
    label: str
    target: str


class EnrichmentProvenance(_CamelModel):
    """Records which TMDB entry enriched an item and how it was obtained."""

    id: str | None = None
    fetched_at: int | None = Field(default=None, alias="fetchedAt")
    source: Literal["cache", "network"] | None = None


class NormalizedHeroItem(_CamelModel):
    """A compact, render-ready spotlight entry."""

    id: str
    type: HeroType
    title: str
    tagline: str | None = None
    overview: str | None = None
    year: int | None = None
    runtime: int | None = None
    rating: float | None = None
    vote_count: int | None = Field(default=None, alias="voteCount")
    genres: list[str] = Field(default_factory=list)
    certification: str | None = None
    backdrops: list[str] = Field(default_factory=list)
    seasons: int | None = None
    episodes: int | None = None
    cta: CallToAction | None = None
    ids: dict[str, str] = Field(default_factory=dict)
    language: str = "en-US"
    tmdb: EnrichmentProvenance | None = None
    slot: str | None = None
    pool_id: str | None = Field(default=None, alias="poolId")

    # Set when enrichment was skipped because TMDB was throttling.
    rate_limit_hit: bool = Field(default=False, alias="rateLimitHit", exclude=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class StoredPool(_CamelModel):
    """The cached result of a pool build for one catalog kind."""

    kind: Literal["movies", "series"]
    items: list[dict[str, Any]] = Field(default_factory=list)
    updated_at: int = Field(default=0, alias="updatedAt")
    expires_at: int = Field(default=0, alias="expiresAt")
    policy_hash: str = Field(default="", alias="policyHash")
    slot_summary: dict[str, int] = Field(default_factory=dict, alias="slotSummary")
    meta: dict[str, Any] | None = None

    # Read-time annotations; never persisted.
    is_expired: bool = Field(default=False, alias="isExpired", exclude=True)
    matches_policy: bool = Field(default=True, alias="matchesPolicy", exclude=True)
    source: Literal["session", "durable"] | None = Field(default=None, exclude=True)

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class HeroPoolResult(_CamelModel):
    """What :class:`~heroreel.services.hero_pool.HeroPoolService` hands back."""

    kind: Literal["movies", "series"]
    items: list[dict[str, Any]] = Field(default_factory=list)
    updated_at: int = Field(default=0, alias="updatedAt")
    expires_at: int = Field(default=0, alias="expiresAt")
    policy_hash: str = Field(default="", alias="policyHash")
    slot_summary: dict[str, int] = Field(default_factory=dict, alias="slotSummary")
    meta: dict[str, Any] | None = None
    from_cache: bool = Field(default=False, alias="fromCache")
    stale: bool = False

    @classmethod
    def from_stored(cls, pool: StoredPool, *, stale: bool) -> "HeroPoolResult":
        return cls(
            kind=pool.kind,
            items=list(pool.items),
            updated_at=pool.updated_at,
            expires_at=pool.expires_at,
            policy_hash=pool.policy_hash,
            slot_summary=dict(pool.slot_summary),
            meta=dict(pool.meta) if pool.meta else None,
            from_cache=True,
            stale=stale,
        )

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class HistoryEntry(_CamelModel):
    id: str
    ts: int


class MemoryEntry(_CamelModel):
    id: str
    ts: int
    slot: str | None = None


class FailureEntry(_CamelModel):
    id: str
    ts: int
    reason: str = ""
    hits: int = 0
