"""Publish/subscribe channels for progress and rate-limit notifications."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Generic, Literal, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressStage = Literal["start", "normalizing", "cache", "done", "cancelled"]


@dataclass(slots=True)
class ProgressEvent:
    """One step of a pool build, as reported to UI collaborators."""

    stage: ProgressStage
    kind: str
    timestamp: int
    index: int | None = None
    total: int | None = None
    slot: str | None = None
    id: str | None = None
    status: str | None = None
    size: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload = {key: value for key, value in asdict(self).items() if value is not None}
        extra = payload.pop("extra", {})
        payload.update(extra)
        return payload


class EventChannel(Generic[T]):
    """A synchronous callback registry.

    Listener errors are logged and never reach the publisher.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: list[Callable[[T], None]] = []

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Register ``listener`` and return a function that removes it."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, event: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener on %s channel failed", self.name)

    def __len__(self) -> int:
        return len(self._listeners)
