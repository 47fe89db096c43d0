"""
RateLimitGuard - Global cooldown after the backend answers 429.

States:
- OPEN: Normal operation, requests pass through
- COOLING_DOWN: A 429 was received; reads are served from cache (even
  stale) instead of hitting the network

Transitions:
- OPEN → COOLING_DOWN: record_rate_limited()
- COOLING_DOWN → OPEN: First check after the deadline passes

One guard covers the whole client: a 429 from any endpoint means the client
as a whole is being throttled.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from loguru import logger

from krios.services.cache import CacheResult, CacheStore


class CooldownState(str, Enum):
    """Rate-limit guard states."""

    OPEN = "OPEN"
    COOLING_DOWN = "COOLING_DOWN"


class RateLimitGuard:
    """
    Rate-limit cooldown for a whole client.

    Usage:
        guard = RateLimitGuard(cache)

        if guard.is_cooling_down():
            cached = guard.try_serve_from_cache(key)
            if cached is not None:
                return cached.data
        ...
        except RateLimitError as e:
            guard.record_rate_limited(e.retry_after)
    """

    def __init__(
        self,
        cache: CacheStore,
        default_cooldown: timedelta = timedelta(seconds=30),
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._cache = cache
        self._default_cooldown = default_cooldown
        self._clock = clock
        self.cooldown_until: datetime | None = None
        self._rate_limited_count = 0

    @property
    def state(self) -> CooldownState:
        """Get current state, clearing an expired cooldown."""
        if self.cooldown_until is not None and self._clock() > self.cooldown_until:
            self.cooldown_until = None
            logger.info("Rate-limit cooldown ended")
        if self.cooldown_until is None:
            return CooldownState.OPEN
        return CooldownState.COOLING_DOWN

    def record_rate_limited(self, retry_after_seconds: float | None = None) -> None:
        """Start a cooldown of ``retry_after_seconds`` or the default."""
        cooldown = (
            timedelta(seconds=retry_after_seconds)
            if retry_after_seconds is not None
            else self._default_cooldown
        )
        self.cooldown_until = self._clock() + cooldown
        self._rate_limited_count += 1
        logger.warning(
            f"Rate limited by backend, cooling down for {cooldown.total_seconds():.0f}s"
        )

    def is_cooling_down(self) -> bool:
        return self.state == CooldownState.COOLING_DOWN

    def try_serve_from_cache(self, key: str) -> CacheResult | None:
        """While cooling down, return any cached value regardless of staleness."""
        if not self.is_cooling_down():
            return None
        return self._cache.get_with_staleness(key)

    def reset(self) -> None:
        """Manually end the cooldown."""
        self.cooldown_until = None
        logger.info("Rate-limit cooldown manually reset")

    def get_time_until_reset(self) -> float | None:
        """Seconds left in the cooldown, or None when not cooling down."""
        if not self.is_cooling_down():
            return None
        remaining = (self.cooldown_until - self._clock()).total_seconds()
        return max(0.0, remaining)

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        return {
            "state": self.state.value,
            "cooldown_until": (
                self.cooldown_until.isoformat() if self.cooldown_until else None
            ),
            "time_until_reset": self.get_time_until_reset(),
            "rate_limited_count": self._rate_limited_count,
        }
