"""Utility helpers for the HeroReel service."""

from __future__ import annotations

import json
import re
import time
from datetime import datetime, timezone
from typing import Any, Literal

PoolKind = Literal["movies", "series"]

YEAR_RE = re.compile(r"(19|20|21)\d{2}")


def now_ms() -> int:
    """Return the current wall clock time in epoch milliseconds."""

    return int(time.time() * 1000)


def clamp(value: float, minimum: float, maximum: float) -> float:
    return min(maximum, max(minimum, value))


def normalize_kind(kind: str | None) -> PoolKind:
    """Map the various catalog kind spellings onto ``movies``/``series``."""

    if isinstance(kind, str) and kind.strip().lower() in {"series", "show", "shows", "tv"}:
        return "series"
    return "movies"


def clean_string(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()


def first_string(*values: Any) -> str:
    """Return the first non-blank string among ``values``."""

    for value in values:
        cleaned = clean_string(value)
        if cleaned:
            return cleaned
    return ""


def to_number(value: Any) -> float | None:
    """Coerce numbers and numeric strings, rejecting booleans and NaN."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


def parse_year(value: Any) -> int | None:
    """Extract a plausible release year from numbers or date-like strings."""

    number = to_number(value)
    if number is not None and 1800 < number < 2100:
        return int(number)
    if isinstance(value, str):
        match = YEAR_RE.search(value)
        if match:
            return int(match.group(0))
    return None


def parse_timestamp_ms(value: Any) -> int:
    """Parse epoch seconds, epoch milliseconds or ISO dates into milliseconds.

    Unparseable input yields ``0`` so that such items simply sort last.
    """

    if not value:
        return 0
    number = to_number(value) if not isinstance(value, str) else None
    if number is not None:
        if number > 1_000_000_000_000:
            return int(number)
        return int(number * 1000)
    if isinstance(value, str):
        text = value.strip()
        numeric = to_number(text)
        if numeric is not None:
            return parse_timestamp_ms(numeric)
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return 0
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    return 0


def extract_external_ids(raw: Any) -> dict[str, str]:
    """Collect TMDB/IMDb/TVDB ids and the catalog rating key from a raw item.

    Understands an ``ids`` mapping as well as ``guid``/``guids`` entries such
    as ``imdb://tt0111161`` or ``tmdb://278``.
    """

    ids: dict[str, str] = {}
    if not isinstance(raw, dict):
        return ids

    def _set(key: str, value: Any) -> None:
        text = str(value).strip() if value is not None else ""
        if text:
            ids[key] = text

    if raw.get("ratingKey") is not None:
        _set("ratingKey", raw["ratingKey"])
    raw_ids = raw.get("ids")
    if isinstance(raw_ids, dict):
        _set("tmdb", raw_ids.get("tmdb"))
        _set("imdb", raw_ids.get("imdb"))
        _set("tvdb", raw_ids.get("tvdb"))

    def _merge(guid: Any) -> None:
        value = guid.get("id") if isinstance(guid, dict) else guid
        text = clean_string(value) if isinstance(value, str) else ""
        if not text:
            return
        scheme, separator, rest = text.partition("://")
        if not separator:
            if text.startswith("tt"):
                _set("imdb", text)
            return
        scheme = scheme.lower()
        tail = rest.split("?")[0].lstrip("/").split("/")[-1]
        if "imdb" in scheme:
            _set("imdb", tail)
        elif scheme == "tmdb" or "themoviedb" in scheme:
            _set("tmdb", tail)
        elif scheme == "tvdb" or "thetvdb" in scheme:
            _set("tvdb", tail)

    _merge(raw.get("guid"))
    guids = raw.get("guids")
    if isinstance(guids, list):
        for guid in guids:
            _merge(guid)
    return ids


def stable_json(payload: Any) -> str:
    """Serialise ``payload`` deterministically for use as a signature."""

    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def parse_config_text(content: str) -> dict[str, Any]:
    """Parse a ``config.cfg`` body written as JSON or ``key=value`` lines."""

    text = (content or "").strip()
    if not text:
        return {}
    if text.startswith("{"):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            return parsed
    values: dict[str, Any] = {}
    for line in text.splitlines():
        entry = line.strip()
        if not entry or entry.startswith(("#", ";")):
            continue
        key, separator, value = entry.partition("=")
        if not separator:
            continue
        key = key.strip()
        if key:
            values[key] = value.strip()
    return values


def clamp_text(value: str, limit: int | None) -> str:
    """Shorten ``value`` to ``limit`` characters, ending with an ellipsis."""

    if not value or not limit or len(value) <= limit:
        return value
    if limit == 1:
        return "…"
    return value[: limit - 1].rstrip() + "…"
