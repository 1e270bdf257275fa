"""Quota, diversity and exclusion aware selection of hero candidates."""

from __future__ import annotations

import math
import random
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Collection, Iterable, Mapping, Sequence

from ..policy import SLOT_KEYS, DiversityWeights
from ..utils import clamp, clean_string, now_ms, parse_timestamp_ms, parse_year, to_number
from .hero_store import resolve_entry_key

NEW_WINDOW_MS = 1000 * 60 * 60 * 24 * 90
OLD_THRESHOLD_YEARS = 12
MAX_CANDIDATE_GENRES = 3
DEFAULT_GENRE_WEIGHT = 0.4
DEFAULT_YEAR_WEIGHT = 0.35

SlotPlan = dict[str, int]


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(slots=True)
class Candidate:
    """A catalog item prepared for selection."""

    id: str
    raw: Mapping[str, Any]
    added_at: int = 0
    year: int | None = None
    rating: float = 0.0
    vote_count: int = 0
    genres: tuple[str, ...] = ()
    is_new: bool = False
    is_old: bool = False
    slot: str | None = None


@dataclass(frozen=True, slots=True)
class DiversityCaps:
    per_genre: int
    per_year: int


@dataclass(slots=True)
class SelectionContext:
    """Mutable state of one planning run."""

    pool_size: int
    caps: DiversityCaps
    history: Collection[str] = frozenset()
    memory: Collection[str] = frozenset()
    failures: Collection[str] = frozenset()
    selected: list[Candidate] = field(default_factory=list)
    summary: dict[str, int] = field(default_factory=lambda: {key: 0 for key in SLOT_KEYS})
    genre_counts: Counter[str] = field(default_factory=Counter)
    year_counts: Counter[int] = field(default_factory=Counter)
    selected_ids: set[str] = field(default_factory=set)

    @property
    def is_full(self) -> bool:
        return len(self.selected) >= self.pool_size

    def passes_caps(self, candidate: Candidate) -> bool:
        if self.caps.per_genre > 0:
            for genre in candidate.genres:
                if self.genre_counts[genre] >= self.caps.per_genre:
                    return False
        if self.caps.per_year > 0 and candidate.year:
            if self.year_counts[candidate.year] >= self.caps.per_year:
                return False
        return True

    def apply(self, candidate: Candidate, slot: str) -> None:
        self.selected.append(replace(candidate, slot=slot))
        self.selected_ids.add(candidate.id)
        self.summary[slot] = self.summary.get(slot, 0) + 1
        for genre in candidate.genres:
            self.genre_counts[genre] += 1
        if candidate.year:
            self.year_counts[candidate.year] += 1


def compute_slot_plan(pool_size: int, quotas: Mapping[str, Any]) -> SlotPlan:
    """Split ``pool_size`` across the slots so the counts always add up.

    Each slot takes ``round(pool_size * quota)`` of what is left; the
    remainder is handed out one by one to the slots with a positive quota.
    """

    plan: SlotPlan = {key: 0 for key in SLOT_KEYS}
    if pool_size <= 0:
        return plan
    remaining = pool_size
    weighted: list[str] = []
    for key in SLOT_KEYS:
        quota = to_number(quotas.get(key))
        if quota is None or quota <= 0:
            continue
        weighted.append(key)
        count = max(0, round_half_up(pool_size * clamp(quota, 0, 1)))
        plan[key] = min(remaining, count)
        remaining -= plan[key]
    targets = weighted or list(SLOT_KEYS)
    cursor = 0
    while remaining > 0:
        plan[targets[cursor % len(targets)]] += 1
        remaining -= 1
        cursor += 1
    return plan


def compute_caps(pool_size: int, diversity: DiversityWeights | Mapping[str, Any] | None) -> DiversityCaps:
    if isinstance(diversity, DiversityWeights):
        genre_raw: Any = diversity.genre
        year_raw: Any = diversity.year
    elif isinstance(diversity, Mapping):
        genre_raw, year_raw = diversity.get("genre"), diversity.get("year")
    else:
        genre_raw = year_raw = None
    genre_weight = clamp(to_number(genre_raw) or DEFAULT_GENRE_WEIGHT, 0.1, 0.9)
    year_weight = clamp(to_number(year_raw) or DEFAULT_YEAR_WEIGHT, 0.1, 0.9)
    return DiversityCaps(
        per_genre=max(1, round_half_up(pool_size * clamp(genre_weight * 0.5, 0.1, 0.35))),
        per_year=max(1, round_half_up(pool_size * clamp(year_weight * 0.5, 0.1, 0.35))),
    )


def _genres(raw: Mapping[str, Any]) -> tuple[str, ...]:
    names: list[str] = []

    def _push(value: Any) -> None:
        text = " ".join(clean_string(value).split())
        if text and text not in names:
            names.append(text)

    for key, fields in (("genres", ("tag", "title", "label", "name")), ("Genre", ("tag",))):
        entries = raw.get(key)
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if isinstance(entry, str):
                _push(entry)
            elif isinstance(entry, Mapping):
                _push(next((entry[name] for name in fields if entry.get(name)), ""))
    return tuple(names[:MAX_CANDIDATE_GENRES])


def _rating(raw: Mapping[str, Any]) -> float:
    for key in ("rating", "audienceRating", "userRating"):
        number = to_number(raw.get(key))
        if number is not None and number > 0:
            return clamp(round(number, 1), 0, 10)
    return 0.0


def _vote_count(raw: Mapping[str, Any]) -> int:
    for key in ("ratingCount", "audienceRatingCount", "userRatingCount", "viewCount"):
        number = to_number(raw.get(key))
        if number is not None and number >= 0:
            return int(number)
    return 0


def prepare_candidates(
    raw_items: Iterable[Any] | None, *, now: int | None = None
) -> list[Candidate]:
    """Resolve ids, drop duplicates and parse the fields used for ranking."""

    current = now_ms() if now is None else now
    current_year = datetime.fromtimestamp(current / 1000, tz=timezone.utc).year
    seen: set[str] = set()
    prepared: list[Candidate] = []
    for raw in raw_items or ():
        if not isinstance(raw, Mapping):
            continue
        candidate_id = resolve_entry_key(raw)
        if not candidate_id or candidate_id in seen:
            continue
        seen.add(candidate_id)
        added_at = parse_timestamp_ms(raw.get("addedAt") or raw.get("createdAt") or raw.get("added"))
        year = parse_year(raw.get("year") or raw.get("originallyAvailableAt"))
        prepared.append(
            Candidate(
                id=candidate_id,
                raw=raw,
                added_at=added_at,
                year=year,
                rating=_rating(raw),
                vote_count=_vote_count(raw),
                genres=_genres(raw),
                is_new=bool(added_at) and current - added_at <= NEW_WINDOW_MS,
                is_old=bool(year) and current_year - (year or 0) >= OLD_THRESHOLD_YEARS,
            )
        )
    return prepared


def sort_new(candidates: Sequence[Candidate]) -> list[Candidate]:
    return sorted(candidates, key=lambda c: c.added_at or 0, reverse=True)


def sort_top_rated(candidates: Sequence[Candidate]) -> list[Candidate]:
    return sorted(
        candidates,
        key=lambda c: (c.rating or 0, c.vote_count or 0, c.added_at or 0),
        reverse=True,
    )


def sort_old_but_gold(candidates: Sequence[Candidate]) -> list[Candidate]:
    """Oldest release first, then higher rating, then most recently added."""

    return sorted(
        (c for c in candidates if c.is_old),
        key=lambda c: (c.year or 0, -(c.rating or 0), -(c.added_at or 0)),
    )


def shuffle(candidates: Sequence[Candidate], rng: random.Random | None = None) -> list[Candidate]:
    """Fisher-Yates shuffle returning a new list."""

    generator = rng or random.Random()
    result = list(candidates)
    for index in range(len(result) - 1, 0, -1):
        swap = generator.randint(0, index)
        result[index], result[swap] = result[swap], result[index]
    return result


def attempt_selection(
    candidates: Sequence[Candidate],
    count: int,
    slot: str,
    context: SelectionContext,
    *,
    allow_history: bool = False,
    predicate: Callable[[Candidate], bool] | None = None,
) -> int:
    """Fill ``slot`` up to ``count`` items from ``candidates``.

    The strict pass skips recently shown, remembered and failed items; those
    are replayed afterwards in the order memory, history, failures when the
    slot is still short. Diversity caps apply in every pass.
    """

    if count <= 0:
        return context.summary.get(slot, 0)

    def _slot_full() -> bool:
        return context.summary.get(slot, 0) >= count or context.is_full

    deferred_memory: list[Candidate] = []
    deferred_history: list[Candidate] = []
    deferred_failures: list[Candidate] = []
    for candidate in candidates:
        if _slot_full():
            break
        if candidate.id in context.selected_ids:
            continue
        if predicate is not None and not predicate(candidate):
            continue
        if not context.passes_caps(candidate):
            continue
        if candidate.id in context.failures:
            deferred_failures.append(candidate)
            continue
        if candidate.id in context.memory:
            deferred_memory.append(candidate)
            continue
        if not allow_history and candidate.id in context.history:
            deferred_history.append(candidate)
            continue
        context.apply(candidate, slot)

    for queue in (deferred_memory, deferred_history, deferred_failures):
        for candidate in queue:
            if _slot_full():
                break
            if candidate.id in context.selected_ids or not context.passes_caps(candidate):
                continue
            context.apply(candidate, slot)
    return context.summary.get(slot, 0)


def ensure_minimum(context: SelectionContext, candidates: Iterable[Candidate]) -> None:
    """Top the pool up with any unselected candidate, ignoring the caps."""

    for candidate in candidates:
        if context.is_full:
            break
        if candidate.id in context.selected_ids:
            continue
        context.apply(candidate, "random")


def plan(
    candidates: Sequence[Candidate],
    slot_plan: Mapping[str, int],
    diversity: DiversityWeights | Mapping[str, Any] | None = None,
    *,
    history: Collection[str] = frozenset(),
    memory: Collection[str] = frozenset(),
    failures: Collection[str] = frozenset(),
    rng: random.Random | None = None,
) -> SelectionContext:
    """Pick candidates for every slot of ``slot_plan``."""

    pool_size = sum(slot_plan.values())
    context = SelectionContext(
        pool_size=pool_size,
        caps=compute_caps(pool_size, diversity),
        history=history,
        memory=memory,
        failures=failures,
    )
    if pool_size <= 0:
        return context

    new_list = sort_new(candidates)
    top_list = sort_top_rated(candidates)
    old_list = sort_old_but_gold(candidates)
    random_list = shuffle(candidates, rng)

    new_count = slot_plan.get("new", 0)
    attempt_selection(new_list, new_count, "new", context, predicate=lambda c: c.is_new)
    attempt_selection(new_list, new_count, "new", context)
    attempt_selection(new_list, new_count, "new", context, allow_history=True)

    for slot, ordered in (("topRated", top_list), ("oldButGold", old_list)):
        attempt_selection(ordered, slot_plan.get(slot, 0), slot, context)
        attempt_selection(ordered, slot_plan.get(slot, 0), slot, context, allow_history=True)

    remaining = [c for c in random_list if c.id not in context.selected_ids]
    attempt_selection(remaining, slot_plan.get("random", 0), "random", context)
    attempt_selection(remaining, slot_plan.get("random", 0), "random", context, allow_history=True)

    if not context.is_full:
        ensure_minimum(context, candidates)
    return context
