"""Exception types shared by the hero rotation services."""

from __future__ import annotations

from dataclasses import dataclass


class HeroError(Exception):
    """Base class for errors raised by the hero rotation engine."""


class TransientNetworkError(HeroError):
    """Raised when the metadata provider stays unreachable after retries."""


class RateLimitError(HeroError):
    """Raised while the provider is throttling us.

    Never recorded in the failure registry because it says nothing about the
    item being looked up.
    """

    code = "RATE_LIMIT"

    def __init__(self, message: str, *, retry_after_ms: int, until: int):
        self.retry_after_ms = retry_after_ms
        self.until = until
        super().__init__(message)


class EnrichmentCancelled(HeroError):
    """Raised when the caller cancels an in-flight lookup."""


class ProviderAuthError(HeroError):
    """Raised when the provider rejects our credential."""

    def __init__(self, status: int):
        self.status = status
        super().__init__(f"TMDB rejected the credential (HTTP {status})")


class ProviderResponseError(HeroError):
    """Raised for non-retryable provider responses."""

    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body = body
        message = f"HTTP {status}"
        if body:
            message = f"{message}: {body[:200]}"
        super().__init__(message)


class NormalizeFailure(HeroError):
    """Raised when a candidate cannot be turned into a hero item."""

    def __init__(self, item_id: str, reason: str):
        self.item_id = item_id
        self.reason = reason
        super().__init__(f"Failed to normalize {item_id}: {reason}")


class StorageReadError(HeroError):
    """Raised by storage adapters when a record cannot be read."""


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """A non-fatal policy problem that was replaced by a default."""

    field: str
    message: str

    def __str__(self) -> str:
        return self.message


__all__ = [
    "ConfigValidationIssue",
    "EnrichmentCancelled",
    "HeroError",
    "NormalizeFailure",
    "ProviderAuthError",
    "ProviderResponseError",
    "RateLimitError",
    "StorageReadError",
    "TransientNetworkError",
]
