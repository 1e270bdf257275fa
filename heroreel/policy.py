"""Hero policy model, validation and loading."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field

from .errors import ConfigValidationIssue
from .utils import PoolKind, normalize_kind, stable_json, to_number

logger = logging.getLogger(__name__)

SLOT_KEYS: tuple[str, ...] = ("new", "topRated", "oldButGold", "random")


class _PolicySection(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SlotQuota(_PolicySection):
    quota: float = Field(ge=0, le=1)


class DiversityWeights(_PolicySection):
    genre: float = Field(default=0.4, ge=0, le=1)
    year: float = Field(default=0.35, ge=0, le=1)
    anti_repeat: float = Field(default=0.25, ge=0, le=1, alias="antiRepeat")


class RotationConfig(_PolicySection):
    interval_minutes: int = Field(default=360, gt=0, alias="intervalMinutes")
    min_pool_size: int = Field(default=6, gt=0, alias="minPoolSize")


class TextClampConfig(_PolicySection):
    title: int = Field(default=96, gt=0)
    subtitle: int = Field(default=240, gt=0)
    summary: int = Field(default=220, gt=0)


class FallbackConfig(_PolicySection):
    prefer: PoolKind = "movies"
    allow_duplicates: bool = Field(default=False, alias="allowDuplicates")


class CacheConfig(_PolicySection):
    ttl_hours: int = Field(default=24, gt=0, alias="ttlHours")
    grace_minutes: int = Field(default=15, ge=0, alias="graceMinutes")

    @property
    def ttl_ms(self) -> int:
        return self.ttl_hours * 60 * 60 * 1000

    @property
    def grace_ms(self) -> int:
        return self.grace_minutes * 60 * 1000


def _default_slots() -> dict[str, SlotQuota]:
    return {
        "new": SlotQuota(quota=0.3),
        "topRated": SlotQuota(quota=0.3),
        "oldButGold": SlotQuota(quota=0.2),
        "random": SlotQuota(quota=0.2),
    }


class HeroPolicy(_PolicySection):
    """Validated configuration steering pool size, slots and caching."""

    pool_size_movies: int = Field(default=10, ge=0, alias="poolSizeMovies")
    pool_size_series: int = Field(default=10, ge=0, alias="poolSizeSeries")
    slots: dict[str, SlotQuota] = Field(default_factory=_default_slots)
    diversity: DiversityWeights = Field(default_factory=DiversityWeights)
    rotation: RotationConfig = Field(default_factory=RotationConfig)
    text_clamp: TextClampConfig = Field(
        default_factory=TextClampConfig, alias="textClamp"
    )
    fallback: FallbackConfig = Field(default_factory=FallbackConfig)
    language: str = "en-US"
    cache: CacheConfig = Field(default_factory=CacheConfig)

    def pool_size(self, kind: str) -> int:
        if normalize_kind(kind) == "series":
            return self.pool_size_series
        return self.pool_size_movies

    def quotas(self) -> dict[str, float]:
        return {key: self.slots[key].quota for key in SLOT_KEYS if key in self.slots}

    def signature(self, kind: str) -> str:
        """Return the cache signature for pools built under this policy."""

        fragment = {
            "poolSize": self.pool_size(kind),
            "slots": {key: {"quota": value} for key, value in self.quotas().items()},
            "diversity": self.diversity.model_dump(by_alias=True),
            "language": self.language or "en-US",
        }
        return stable_json(fragment)


DEFAULT_POLICY = HeroPolicy()


@dataclass
class PolicyLoadResult:
    """A sanitized policy together with the issues found while loading it."""

    policy: HeroPolicy
    issues: list[ConfigValidationIssue] = field(default_factory=list)


class _IssueCollector:
    def __init__(self) -> None:
        self.issues: list[ConfigValidationIssue] = []

    def add(self, field_name: str, message: str) -> None:
        self.issues.append(ConfigValidationIssue(field=field_name, message=message))

    def positive_int(
        self, value: Any, fallback: int, field_name: str, *, allow_zero: bool = False
    ) -> int:
        number = to_number(value)
        if number is not None and (number >= 0 if allow_zero else number > 0):
            return int(number)
        if value is not None:
            self.add(field_name, f"{field_name} invalid ({value}), using default ({fallback}).")
        return fallback

    def in_range(
        self, value: Any, minimum: float, maximum: float, fallback: float, field_name: str
    ) -> float:
        number = to_number(value)
        if number is not None and minimum <= number <= maximum:
            return number
        if value is not None:
            self.add(field_name, f"{field_name} invalid ({value}), using default ({fallback}).")
        return fallback


def _section(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key)
    return value if isinstance(value, Mapping) else {}


def sanitize_policy(raw: Any) -> PolicyLoadResult:
    """Validate a raw policy payload, substituting defaults for bad values.

    Validation never raises; every substitution is reported as a
    :class:`ConfigValidationIssue`.
    """

    collector = _IssueCollector()
    defaults = DEFAULT_POLICY
    if not isinstance(raw, Mapping):
        collector.add("policy", "Policy payload missing or invalid, using defaults.")
        return PolicyLoadResult(policy=defaults, issues=collector.issues)

    raw_slots = _section(raw, "slots")
    slots: dict[str, SlotQuota] = {}
    for key in SLOT_KEYS:
        slot = raw_slots.get(key)
        quota = slot.get("quota") if isinstance(slot, Mapping) else None
        slots[key] = SlotQuota(
            quota=collector.in_range(
                quota, 0, 1, defaults.slots[key].quota, f"slots.{key}.quota"
            )
        )

    raw_diversity = _section(raw, "diversity")
    diversity = DiversityWeights(
        genre=collector.in_range(
            raw_diversity.get("genre"), 0, 1, defaults.diversity.genre, "diversity.genre"
        ),
        year=collector.in_range(
            raw_diversity.get("year"), 0, 1, defaults.diversity.year, "diversity.year"
        ),
        anti_repeat=collector.in_range(
            raw_diversity.get("antiRepeat"),
            0,
            1,
            defaults.diversity.anti_repeat,
            "diversity.antiRepeat",
        ),
    )

    raw_rotation = _section(raw, "rotation")
    rotation = RotationConfig(
        interval_minutes=collector.positive_int(
            raw_rotation.get("intervalMinutes"),
            defaults.rotation.interval_minutes,
            "rotation.intervalMinutes",
        ),
        min_pool_size=collector.positive_int(
            raw_rotation.get("minPoolSize"),
            defaults.rotation.min_pool_size,
            "rotation.minPoolSize",
        ),
    )

    raw_clamp = _section(raw, "textClamp")
    text_clamp = TextClampConfig(
        **{
            key: collector.positive_int(
                raw_clamp.get(key), getattr(defaults.text_clamp, key), f"textClamp.{key}"
            )
            for key in ("title", "subtitle", "summary")
        }
    )

    raw_fallback = _section(raw, "fallback")
    prefer = raw_fallback.get("prefer")
    if prefer in {"movies", "series", "shows"}:
        resolved_prefer: Literal["movies", "series"] = normalize_kind(prefer)
    else:
        resolved_prefer = defaults.fallback.prefer
        if prefer is not None:
            collector.add(
                "fallback.prefer",
                f"fallback.prefer invalid ({prefer}), using default ({resolved_prefer}).",
            )
    allow_duplicates = raw_fallback.get("allowDuplicates")
    fallback = FallbackConfig(
        prefer=resolved_prefer,
        allow_duplicates=(
            allow_duplicates
            if isinstance(allow_duplicates, bool)
            else defaults.fallback.allow_duplicates
        ),
    )

    raw_language = raw.get("language")
    language = raw_language.strip() if isinstance(raw_language, str) else ""
    if not language:
        language = defaults.language
        collector.add("language", "language missing or invalid, defaulted to en-US.")

    raw_cache = _section(raw, "cache")
    cache = CacheConfig(
        ttl_hours=collector.positive_int(
            raw_cache.get("ttlHours"), defaults.cache.ttl_hours, "cache.ttlHours"
        ),
        grace_minutes=collector.positive_int(
            raw_cache.get("graceMinutes"),
            defaults.cache.grace_minutes,
            "cache.graceMinutes",
            allow_zero=True,
        ),
    )

    policy = HeroPolicy(
        pool_size_movies=collector.positive_int(
            raw.get("poolSizeMovies"), defaults.pool_size_movies, "poolSizeMovies"
        ),
        pool_size_series=collector.positive_int(
            raw.get("poolSizeSeries"), defaults.pool_size_series, "poolSizeSeries"
        ),
        slots=slots,
        diversity=diversity,
        rotation=rotation,
        text_clamp=text_clamp,
        fallback=fallback,
        language=language,
        cache=cache,
    )
    return PolicyLoadResult(policy=policy, issues=collector.issues)


def load_policy(path: Path | None) -> PolicyLoadResult:
    """Load and sanitize the policy file, falling back to defaults."""

    if path is None:
        return PolicyLoadResult(policy=DEFAULT_POLICY)
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to load hero policy from %s: %s", path, exc)
        result = sanitize_policy(None)
        result.issues.insert(
            0,
            ConfigValidationIssue(field="policy", message=f"Failed to load policy ({exc})"),
        )
        return result
    result = sanitize_policy(raw)
    if result.issues:
        logger.warning(
            "Hero policy issues: %s", " | ".join(str(issue) for issue in result.issues)
        )
    return result
