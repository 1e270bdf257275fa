from __future__ import annotations

import random

from heroreel.policy import DiversityWeights
from heroreel.services.planner import (
    Candidate,
    DiversityCaps,
    compute_caps,
    compute_slot_plan,
    plan,
    prepare_candidates,
    shuffle,
    sort_new,
    sort_old_but_gold,
    sort_top_rated,
)

NOW = 1_717_200_000_000
DAY_MS = 24 * 60 * 60 * 1000
DEFAULT_QUOTAS = {"new": 0.3, "topRated": 0.3, "oldButGold": 0.2, "random": 0.2}


def only(slot: str, count: int) -> dict[str, int]:
    slots = {"new": 0, "topRated": 0, "oldButGold": 0, "random": 0}
    slots[slot] = count
    return slots


def test_slot_plan_matches_quotas() -> None:
    assert compute_slot_plan(10, DEFAULT_QUOTAS) == {
        "new": 3,
        "topRated": 3,
        "oldButGold": 2,
        "random": 2,
    }


def test_slot_plan_hands_out_leftover_round_robin() -> None:
    assert compute_slot_plan(7, DEFAULT_QUOTAS) == {
        "new": 3,
        "topRated": 2,
        "oldButGold": 1,
        "random": 1,
    }
    assert compute_slot_plan(3, {}) == {"new": 1, "topRated": 1, "oldButGold": 1, "random": 0}


def test_slot_plan_never_exceeds_pool_size() -> None:
    result = compute_slot_plan(4, {"new": 1, "topRated": 1})
    assert result == {"new": 4, "topRated": 0, "oldButGold": 0, "random": 0}
    assert sum(compute_slot_plan(0, DEFAULT_QUOTAS).values()) == 0


def test_caps_scale_with_pool_size() -> None:
    assert compute_caps(10, DiversityWeights()) == DiversityCaps(per_genre=2, per_year=2)
    assert compute_caps(10, {"genre": 0.5}) == DiversityCaps(per_genre=3, per_year=2)
    assert compute_caps(1, None) == DiversityCaps(per_genre=1, per_year=1)


def test_prepare_candidates_resolves_ids_and_flags() -> None:
    raw_items = [
        {
            "ratingKey": 1,
            "title": "Fresh",
            "addedAt": NOW // 1000 - 10 * 24 * 60 * 60,
            "year": 2024,
            "rating": 7.5,
            "genres": [{"tag": "Drama"}, {"tag": "Drama"}, "Crime", {"tag": "War"}, {"tag": "Music"}],
        },
        {"ratingKey": 1, "title": "Duplicate"},
        {
            "guid": "plex://movie/abc",
            "title": "Classic",
            "year": 1975,
            "addedAt": "2020-01-01T00:00:00Z",
            "audienceRating": 8.8,
            "ratingCount": 120,
        },
        "not a mapping",
        {},
    ]

    candidates = prepare_candidates(raw_items, now=NOW)

    assert [c.id for c in candidates] == ["rk:1", "plex://movie/abc"]
    fresh, classic = candidates
    assert fresh.is_new and not fresh.is_old
    assert fresh.genres == ("Drama", "Crime", "War")
    assert fresh.added_at == NOW - 10 * DAY_MS
    assert classic.is_old and not classic.is_new
    assert classic.rating == 8.8
    assert classic.vote_count == 120
    assert classic.added_at == 1_577_836_800_000


def test_sorters() -> None:
    candidates = [
        Candidate(id=str(added), raw={}, added_at=added) for added in (1, 5, 3, 2, 4)
    ]
    assert [c.id for c in sort_new(candidates)] == ["5", "4", "3", "2", "1"]

    rated = [
        Candidate(id="low", raw={}, rating=6.0, vote_count=900),
        Candidate(id="tie-few", raw={}, rating=8.0, vote_count=10),
        Candidate(id="tie-many", raw={}, rating=8.0, vote_count=500),
    ]
    assert [c.id for c in sort_top_rated(rated)] == ["tie-many", "tie-few", "low"]

    aged = [
        Candidate(id="seventies", raw={}, year=1975, is_old=True),
        Candidate(id="recent", raw={}, year=2022),
        Candidate(id="sixties", raw={}, year=1962, is_old=True),
    ]
    assert [c.id for c in sort_old_but_gold(aged)] == ["sixties", "seventies"]


def test_shuffle_is_a_seeded_permutation() -> None:
    candidates = [Candidate(id=str(index), raw={}) for index in range(8)]

    first = shuffle(candidates, random.Random(7))
    second = shuffle(candidates, random.Random(7))

    assert [c.id for c in first] == [c.id for c in second]
    assert sorted(c.id for c in first) == sorted(c.id for c in candidates)
    assert [c.id for c in candidates] == [str(index) for index in range(8)]


def test_new_slot_prefers_recently_added_items() -> None:
    candidates = [
        Candidate(id="x", raw={}, added_at=100, is_new=True),
        Candidate(id="y", raw={}, added_at=200),
        Candidate(id="z", raw={}, added_at=50, is_new=True),
    ]

    context = plan(candidates, only("new", 2))

    assert [c.id for c in context.selected] == ["x", "z"]
    assert {c.slot for c in context.selected} == {"new"}


def test_old_but_gold_slot_picks_oldest_first() -> None:
    candidates = [
        Candidate(id="recent", raw={}, year=2020, rating=9.5),
        Candidate(id="seventies", raw={}, year=1975, is_old=True),
        Candidate(id="sixties", raw={}, year=1962, is_old=True),
    ]

    context = plan(candidates, only("oldButGold", 2))

    assert [c.id for c in context.selected] == ["sixties", "seventies"]


def test_excluded_items_are_replayed_memory_then_history_then_failures() -> None:
    candidates = [
        Candidate(id=name, raw={}, rating=rating)
        for name, rating in (("a", 9.0), ("b", 8.0), ("c", 7.0), ("d", 6.0))
    ]
    exclusions = {"history": {"a"}, "memory": {"b"}, "failures": {"c"}}

    assert [c.id for c in plan(candidates, only("topRated", 1), **exclusions).selected] == ["d"]
    assert [c.id for c in plan(candidates, only("topRated", 2), **exclusions).selected] == [
        "d",
        "b",
    ]
    assert [c.id for c in plan(candidates, only("topRated", 3), **exclusions).selected] == [
        "d",
        "b",
        "a",
    ]
    assert [c.id for c in plan(candidates, only("topRated", 4), **exclusions).selected] == [
        "d",
        "b",
        "a",
        "c",
    ]


def test_genre_cap_then_minimum_fill() -> None:
    candidates = [
        Candidate(id="a", raw={}, rating=9.0, genres=("Drama",)),
        Candidate(id="b", raw={}, rating=8.0, genres=("Drama",)),
        Candidate(id="c", raw={}, rating=7.0, genres=("Comedy",)),
        Candidate(id="d", raw={}, rating=6.0, genres=("Horror",)),
        Candidate(id="e", raw={}, rating=5.0, genres=("Drama",)),
    ]

    context = plan(candidates, only("topRated", 4), DiversityWeights())

    assert [c.id for c in context.selected] == ["a", "c", "d", "b"]
    assert context.summary["topRated"] == 3
    assert context.summary["random"] == 1
    assert context.selected[-1].slot == "random"


def test_year_cap_then_minimum_fill() -> None:
    same_year = [
        Candidate(id=f"a{index}", raw={}, rating=9.6 - index / 10, year=2000)
        for index in range(1, 6)
    ]
    spread = [
        Candidate(id=f"b{index}", raw={}, rating=8.1 - index / 10, year=1989 + index)
        for index in range(1, 6)
    ]

    context = plan(same_year + spread, only("topRated", 10), DiversityWeights())

    assert context.caps.per_year == 2
    top_rated = [c for c in context.selected if c.slot == "topRated"]
    assert [c.id for c in top_rated] == ["a1", "a2", "b1", "b2", "b3", "b4", "b5"]
    assert sum(1 for c in top_rated if c.year == 2000) == 2
    assert [c.id for c in context.selected if c.slot == "random"] == ["a3", "a4", "a5"]
    assert context.summary["topRated"] == 7
    assert context.summary["random"] == 3


def test_plan_never_duplicates_and_summary_adds_up() -> None:
    candidates = prepare_candidates(
        [
            {"ratingKey": index, "title": f"Item {index}", "addedAt": NOW - index * DAY_MS}
            for index in range(6)
        ]
        + [{"ratingKey": 0, "title": "Repeat"}],
        now=NOW,
    )

    context = plan(
        candidates,
        compute_slot_plan(10, DEFAULT_QUOTAS),
        DiversityWeights(),
        history={"rk:1"},
        rng=random.Random(3),
    )

    ids = [c.id for c in context.selected]
    assert len(ids) == 6
    assert len(set(ids)) == 6
    assert sum(context.summary.values()) == len(ids)


def test_empty_plan_selects_nothing() -> None:
    candidates = [Candidate(id="a", raw={})]

    context = plan(candidates, compute_slot_plan(0, DEFAULT_QUOTAS))

    assert context.selected == []
    assert context.is_full
