from heroreel.utils import (
    clamp_text,
    extract_external_ids,
    normalize_kind,
    parse_config_text,
    parse_timestamp_ms,
    parse_year,
)


def test_normalize_kind_aliases():
    assert normalize_kind("tv") == "series"
    assert normalize_kind("Shows") == "series"
    assert normalize_kind("movie") == "movies"
    assert normalize_kind(None) == "movies"


def test_parse_timestamp_handles_seconds_millis_and_iso():
    assert parse_timestamp_ms(1_700_000_000) == 1_700_000_000_000
    assert parse_timestamp_ms(1_700_000_000_000) == 1_700_000_000_000
    assert parse_timestamp_ms("1700000000") == 1_700_000_000_000
    assert parse_timestamp_ms("2024-01-01T00:00:00Z") == 1_704_067_200_000
    assert parse_timestamp_ms("yesterday") == 0


def test_parse_timestamp_reads_naive_dates_as_utc():
    assert parse_timestamp_ms("2024-01-01") == 1_704_067_200_000
    assert parse_timestamp_ms("2024-01-01T12:00:00") == 1_704_110_400_000
    assert parse_timestamp_ms("2024-01-01T00:00:00+01:00") == 1_704_063_600_000


def test_parse_year_from_dates():
    assert parse_year(1999) == 1999
    assert parse_year("2008-05-02") == 2008
    assert parse_year(12) is None


def test_extract_external_ids_merges_guids():
    ids = extract_external_ids(
        {
            "ratingKey": 42,
            "guid": "plex://movie/5d776",
            "guids": [{"id": "imdb://tt0111161"}, {"id": "tmdb://278"}, "tvdb://81189"],
        }
    )

    assert ids == {"ratingKey": "42", "imdb": "tt0111161", "tmdb": "278", "tvdb": "81189"}


def test_parse_config_text_supports_json_and_key_value():
    assert parse_config_text('{"tmdbToken": "abc"}') == {"tmdbToken": "abc"}
    assert parse_config_text("# comment\ntmdbApiKey = 123\n; other\nbroken") == {
        "tmdbApiKey": "123"
    }


def test_clamp_text_adds_ellipsis():
    assert clamp_text("Short", 10) == "Short"
    assert clamp_text("The Shawshank Redemption", 10) == "The Shaws…"
