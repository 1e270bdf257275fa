"""Rate-limit circuit breaker for the metadata provider."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable

from ..events import EventChannel
from ..utils import now_ms

logger = logging.getLogger(__name__)

DEFAULT_BASE_DELAY_MS = 1_000
DEFAULT_MAX_DELAY_MS = 60_000
DEFAULT_EXPONENT_CAP = 5
DEFAULT_STRIKE_THRESHOLD = 5
DEFAULT_MAX_STRIKES = 8
DEFAULT_RECOVERY_WINDOW_MS = 30_000


@dataclass(frozen=True, slots=True)
class RateLimitState:
    active: bool = False
    until: int = 0
    retry_after_ms: int = 0
    last_status: int | None = None
    last_hit_at: int = 0
    strikes: int = 0

    def to_payload(self) -> dict[str, Any]:
        data = asdict(self)
        return {
            "active": data["active"],
            "until": data["until"],
            "retryAfterMs": data["retry_after_ms"],
            "lastStatus": data["last_status"],
            "lastHitAt": data["last_hit_at"],
            "strikes": data["strikes"],
        }


class RateLimitBreaker:
    """Tracks provider throttling as an ``Idle``/``Limited`` state machine.

    A 429 always trips the breaker. Other overload responses only add a
    strike and trip it once ``strike_threshold`` is reached. While limited,
    requests should wait until ``until``. Strikes decay by one for every
    ``recovery_window_ms`` that passes without a new hit.
    """

    def __init__(
        self,
        *,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
        exponent_cap: int = DEFAULT_EXPONENT_CAP,
        strike_threshold: int = DEFAULT_STRIKE_THRESHOLD,
        max_strikes: int = DEFAULT_MAX_STRIKES,
        recovery_window_ms: int = DEFAULT_RECOVERY_WINDOW_MS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.exponent_cap = exponent_cap
        self.strike_threshold = strike_threshold
        self.max_strikes = max_strikes
        self.recovery_window_ms = recovery_window_ms
        self._clock = clock
        self._state = RateLimitState()
        self._decay_anchor = 0
        self.changes: EventChannel[RateLimitState] = EventChannel("rate-limit")

    @property
    def state(self) -> RateLimitState:
        return self.refresh()

    def penalty_delay(self, strikes: int, retry_after_ms: int = 0) -> int:
        exponent = max(0, min(strikes, self.exponent_cap))
        computed = self.base_delay_ms * (2**exponent)
        return int(min(self.max_delay_ms, max(retry_after_ms, computed)))

    def remaining_ms(self, now: int | None = None) -> int:
        current = self._clock() if now is None else now
        state = self.refresh(current)
        if not state.active:
            return 0
        return max(0, state.until - current)

    def refresh(self, now: int | None = None) -> RateLimitState:
        """Apply time-based transitions and return the current state."""

        current = self._clock() if now is None else now
        state = self._state
        if state.active and current >= state.until:
            self._decay_anchor = state.until
            state = replace(state, active=False, retry_after_ms=0, until=0, last_status=None)
            logger.info("TMDB rate limit window elapsed (strikes=%s)", state.strikes)
        if not state.active and state.strikes > 0 and self.recovery_window_ms > 0:
            steps = (current - self._decay_anchor) // self.recovery_window_ms
            if steps > 0:
                strikes = max(0, state.strikes - int(steps))
                self._decay_anchor += int(steps) * self.recovery_window_ms
                state = replace(state, strikes=strikes)
        self._set_state(state)
        return state

    def register_hit(self, status: int = 429, retry_after_ms: int = 0) -> RateLimitState:
        """Record a throttling response and open the penalty window."""

        current = self._clock()
        previous = self.refresh(current)
        delay = self.penalty_delay(previous.strikes, retry_after_ms)
        strikes = min(self.max_strikes, previous.strikes + 1)
        state = RateLimitState(
            active=True,
            until=current + delay,
            retry_after_ms=delay,
            last_status=status,
            last_hit_at=current,
            strikes=strikes,
        )
        self._decay_anchor = current
        logger.warning(
            "TMDB rate limit hit (status=%s, retryAfterMs=%s, strikes=%s)",
            status,
            delay,
            strikes,
        )
        self._set_state(state)
        return state

    def register_strike(self, status: int) -> RateLimitState:
        """Count an overload signal that is not an explicit 429."""

        current = self._clock()
        previous = self.refresh(current)
        if previous.active:
            return previous
        strikes = min(self.max_strikes, previous.strikes + 1)
        if strikes >= self.strike_threshold:
            return self.register_hit(status)
        self._decay_anchor = current
        state = replace(previous, strikes=strikes, last_status=status, last_hit_at=current)
        self._set_state(state)
        return state

    def reset(self) -> None:
        self._decay_anchor = 0
        self._set_state(RateLimitState())

    def _set_state(self, state: RateLimitState) -> None:
        if state == self._state:
            return
        self._state = state
        self.changes.publish(state)
