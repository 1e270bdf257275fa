"""HeroReel: rotating, enriched spotlight picks for a media catalog."""

from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "1.0.0"

_LAZY_EXPORTS = {"app", "create_app"}
__all__ = ["__version__", *sorted(_LAZY_EXPORTS)]


def __getattr__(name: str) -> Any:
    # Importing heroreel.main builds the FastAPI app, so defer it until asked.
    if name in _LAZY_EXPORTS:
        return getattr(import_module("heroreel.main"), name)
    raise AttributeError(f"module 'heroreel' has no attribute {name!r}")
