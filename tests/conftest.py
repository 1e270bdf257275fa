"""Shared pytest setup for the HeroReel test-suite."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Make ``heroreel`` importable straight from a checkout.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

ISOLATED_ENV = (
    "TMDB_TOKEN",
    "TMDB_API_KEY",
    "TMDB_CONFIG_URL",
    "TMDB_FALLBACK_CREDENTIAL",
    "HERO_POLICY_PATH",
)


@pytest.fixture(autouse=True)
def _isolate_tmdb_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep credentials from the developer's shell out of the settings under test."""

    for name in ISOLATED_ENV:
        monkeypatch.delenv(name, raising=False)
