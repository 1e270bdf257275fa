"""Configuration settings and hero policy behaviour tests."""

from __future__ import annotations

import json

from heroreel.__main__ import main
from heroreel.config import Settings
from heroreel.policy import DEFAULT_POLICY, load_policy, sanitize_policy


def test_settings_defaults_and_blank_credentials() -> None:
    """Blank credentials should be treated as missing."""

    settings = Settings(_env_file=None, TMDB_TOKEN="  ", TMDB_API_KEY="")

    assert settings.tmdb_token is None
    assert settings.tmdb_api_key is None
    assert settings.has_tmdb_credentials is False
    assert str(settings.tmdb_api_url).startswith("https://api.themoviedb.org/3")
    assert settings.tmdb_min_request_interval_ms == 400
    assert settings.tmdb_cache_max_entries == 60


def test_settings_reads_tmdb_overrides() -> None:
    settings = Settings(
        _env_file=None,
        TMDB_TOKEN="token-value",
        TMDB_MAX_RETRIES=1,
        TMDB_CACHE_TTL_SECONDS=600,
    )

    assert settings.has_tmdb_credentials is True
    assert settings.tmdb_max_retries == 1
    assert settings.tmdb_cache_ttl_seconds == 600


def test_sanitize_policy_substitutes_defaults_and_collects_issues() -> None:
    """Invalid values are replaced and every substitution is reported."""

    result = sanitize_policy(
        {
            "poolSizeMovies": -4,
            "poolSizeSeries": "8",
            "slots": {"new": {"quota": 1.5}, "topRated": {"quota": 0.5}},
            "diversity": {"genre": "lots"},
            "cache": {"ttlHours": 0, "graceMinutes": 0},
            "fallback": {"prefer": "shows"},
            "language": "de-DE",
        }
    )

    policy = result.policy
    assert policy.pool_size_movies == DEFAULT_POLICY.pool_size_movies
    assert policy.pool_size_series == 8
    assert policy.slots["new"].quota == 0.3
    assert policy.slots["topRated"].quota == 0.5
    assert policy.diversity.genre == 0.4
    assert policy.cache.ttl_hours == 24
    assert policy.cache.grace_minutes == 0
    assert policy.fallback.prefer == "series"
    assert policy.language == "de-DE"
    fields = {issue.field for issue in result.issues}
    assert {"poolSizeMovies", "slots.new.quota", "diversity.genre", "cache.ttlHours"} <= fields


def test_sanitize_policy_reports_missing_language() -> None:
    result = sanitize_policy({"language": "  "})

    assert result.policy.language == "en-US"
    assert any(
        issue.message == "language missing or invalid, defaulted to en-US."
        for issue in result.issues
    )


def test_sanitize_policy_never_raises_on_garbage() -> None:
    result = sanitize_policy(["not", "a", "mapping"])

    assert result.policy == DEFAULT_POLICY
    assert result.issues


def test_policy_signature_tracks_relevant_fields() -> None:
    base = sanitize_policy({"language": "en-US"}).policy
    bigger = sanitize_policy({"language": "en-US", "poolSizeMovies": 12}).policy
    clamp_only = sanitize_policy({"language": "en-US", "textClamp": {"title": 40}}).policy

    assert base.signature("movies") != bigger.signature("movies")
    assert base.signature("series") == bigger.signature("series")
    assert base.signature("movies") == clamp_only.signature("movies")


def test_load_policy_reads_json_file(tmp_path) -> None:
    path = tmp_path / "hero-policy.json"
    path.write_text(json.dumps({"poolSizeMovies": 6, "language": "fr-FR"}), encoding="utf-8")

    result = load_policy(path)

    assert result.policy.pool_size_movies == 6
    assert result.policy.language == "fr-FR"
    assert result.issues == []


def test_load_policy_falls_back_on_unreadable_file(tmp_path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")

    result = load_policy(path)

    assert result.policy == DEFAULT_POLICY
    assert result.issues[0].field == "policy"


def test_check_policy_command(tmp_path, capsys) -> None:
    good = tmp_path / "good.json"
    good.write_text(json.dumps({"language": "de-DE", "poolSizeMovies": 8}), encoding="utf-8")
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"language": "en-US", "poolSizeSeries": -1}), encoding="utf-8")

    assert main(["--check-policy", str(good)]) == 0
    assert "ok" in capsys.readouterr().out

    assert main(["--check-policy", str(bad)]) == 1
    assert "poolSizeSeries" in capsys.readouterr().out
