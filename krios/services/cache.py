"""
CacheStore - TTL cache with stale-while-revalidate support.

Features:
- Memory cache with oldest-first eviction at capacity
- Per-route TTL policies registered explicitly
- Stale lookups so callers can serve old data while revalidating
- Optional persisted tier restored on startup and revalidated against TTL
"""

import hashlib
import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable
from urllib.parse import urlencode

from loguru import logger

from krios.services.storage import PersistentStore

Clock = Callable[[], datetime]

# Query strings longer than this are replaced by a digest in cache keys
MAX_QUERY_KEY_LENGTH = 200

DEFAULT_EXCLUDED_FIELDS = frozenset({"avatar"})


@dataclass(frozen=True)
class RoutePolicy:
    """Caching rule for one route."""

    pattern: str
    ttl: timedelta
    persistent: bool = False
    exact: bool = True

    def matches(self, path: str) -> bool:
        if self.exact:
            return path == self.pattern
        return path.startswith(self.pattern)


DEFAULT_ROUTE_POLICIES = (
    RoutePolicy("/auth/profile", timedelta(minutes=10), persistent=True),
    RoutePolicy("/rooms", timedelta(minutes=2), persistent=True),
    RoutePolicy("/friends", timedelta(seconds=60), persistent=True),
    RoutePolicy("/notifications", timedelta(seconds=30)),
    RoutePolicy("/direct-messages/conversations", timedelta(seconds=30)),
    RoutePolicy("/rooms/", timedelta(seconds=60), exact=False),
)


class CachePolicyTable:
    """
    Ordered lookup of route policies.

    Exact registrations win over prefix registrations; among prefixes the
    longest one wins. Unregistered routes are not cached.
    """

    def __init__(self, policies: Iterable[RoutePolicy] = DEFAULT_ROUTE_POLICIES):
        self._exact: dict[str, RoutePolicy] = {}
        self._prefixes: list[RoutePolicy] = []
        for policy in policies:
            self.register(policy)

    def register(self, policy: RoutePolicy) -> None:
        if policy.exact:
            self._exact[policy.pattern] = policy
        else:
            self._prefixes = [p for p in self._prefixes if p.pattern != policy.pattern]
            self._prefixes.append(policy)
            self._prefixes.sort(key=lambda p: len(p.pattern), reverse=True)

    def match(self, path: str) -> RoutePolicy | None:
        policy = self._exact.get(path)
        if policy is not None:
            return policy
        for policy in self._prefixes:
            if policy.matches(path):
                return policy
        return None


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def make_cache_key(
    method: str,
    path: str,
    params: dict[str, Any] | None = None,
    json_body: Any = None,
) -> str:
    """
    Build the canonical key for a request.

    Read keys start with the path so prefix invalidation by route works.
    Write keys carry the method and a digest of the body.
    """
    method = method.upper()
    key = path
    if params:
        query = urlencode(
            [(k, _canonical_json(v)) for k, v in sorted(params.items()) if v is not None]
        )
        if len(query) > MAX_QUERY_KEY_LENGTH:
            query = "sha256=" + hashlib.sha256(query.encode()).hexdigest()
        if query:
            key = f"{path}?{query}"

    if method == "GET":
        return key

    body_digest = hashlib.sha256(_canonical_json(json_body).encode()).hexdigest()[:16]
    return f"{method} {key}#{body_digest}"


@dataclass
class CacheEntry:
    """A single cache entry with metadata."""

    key: str
    value: Any
    stored_at: datetime
    ttl: timedelta
    from_persisted: bool = False

    def is_stale(self, now: datetime) -> bool:
        """Entry is past its TTL."""
        return now - self.stored_at > self.ttl


@dataclass
class CacheResult:
    """Result from cache lookup."""

    data: Any
    from_cache: str  # 'memory' | 'persisted'
    is_stale: bool


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    stale_hits: int = 0
    evictions: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.stale_hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits + self.stale_hits) / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "stale_hits": self.stale_hits,
            "evictions": self.evictions,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }


def strip_binary_fields(value: Any, excluded: frozenset[str]) -> Any:
    """Return a copy of ``value`` without excluded keys or ``data:`` URIs."""
    if isinstance(value, dict):
        return {
            k: strip_binary_fields(v, excluded)
            for k, v in value.items()
            if k not in excluded and not (isinstance(v, str) and v.startswith("data:"))
        }
    if isinstance(value, list):
        return [strip_binary_fields(v, excluded) for v in value]
    return value


class CacheStore:
    """
    Cache store with TTL and stale-while-revalidate.

    All methods are synchronous: on a single event loop every read-modify-write
    below runs without suspending, so no lock is needed.

    Usage:
        cache = CacheStore(max_size=100)

        cached = cache.get(key)
        if cached is None:
            data = await fetch_data()
            cache.set(key, data, ttl=timedelta(minutes=5))
    """

    def __init__(
        self,
        max_size: int = 100,
        clock: Clock = datetime.now,
        persistent: PersistentStore | None = None,
        persisted_max_age: timedelta = timedelta(hours=24),
        max_entry_bytes: int = 100_000,
        excluded_fields: Iterable[str] = DEFAULT_EXCLUDED_FIELDS,
        debug: bool = False,
    ):
        self._memory: dict[str, CacheEntry] = {}
        self._max_size = max_size
        self._clock = clock
        self._persistent = persistent
        self._persisted_max_age = persisted_max_age
        self._max_entry_bytes = max_entry_bytes
        self._excluded_fields = frozenset(excluded_fields)
        self._debug = debug
        self._stats = CacheStats()

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value only if present and fresh."""
        entry = self._memory.get(key)
        if entry is None:
            self._stats.misses += 1
            self._log(f"MISS: {key[:50]}")
            return default

        if entry.is_stale(self._clock()):
            self._stats.misses += 1
            self._log(f"STALE (fresh read refused): {key[:50]}")
            return default

        self._stats.hits += 1
        self._log(f"HIT: {key[:50]}")
        return entry.value

    def get_with_staleness(self, key: str) -> CacheResult | None:
        """Return the stored value flagged fresh or stale, or None if absent."""
        entry = self._memory.get(key)
        if entry is None:
            self._stats.misses += 1
            self._log(f"MISS: {key[:50]}")
            return None

        is_stale = entry.is_stale(self._clock())
        if is_stale:
            self._stats.stale_hits += 1
            self._log(f"STALE HIT: {key[:50]}")
        else:
            self._stats.hits += 1
            self._log(f"HIT: {key[:50]}")

        return CacheResult(
            data=entry.value,
            from_cache="persisted" if entry.from_persisted else "memory",
            is_stale=is_stale,
        )

    def has(self, key: str) -> bool:
        """Check for a fresh entry without touching statistics."""
        entry = self._memory.get(key)
        return entry is not None and not entry.is_stale(self._clock())

    def has_any(self, key: str) -> bool:
        """Check for any entry, fresh or stale."""
        return key in self._memory

    def set(self, key: str, value: Any, ttl: timedelta, persist: bool = False) -> None:
        """
        Store or overwrite an entry, resetting its storage time.

        Args:
            key: Cache key
            value: JSON-compatible data
            ttl: Time to live
            persist: Also write to the persisted tier, if one is configured
        """
        entry = CacheEntry(key=key, value=value, stored_at=self._clock(), ttl=ttl)

        if len(self._memory) >= self._max_size and key not in self._memory:
            self._evict_oldest()

        self._memory[key] = entry
        self._log(f"SET: {key[:50]} (TTL: {ttl.total_seconds()}s)")

        if persist and self._persistent is not None:
            self._persist(entry)

    def delete(self, key: str) -> bool:
        """Delete a specific key from memory and the persisted tier."""
        removed = self._memory.pop(key, None) is not None
        if self._persistent is not None:
            self._persistent.delete(key)
        if removed:
            self._log(f"DELETE: {key[:50]}")
        return removed

    def invalidate(self, pattern: "str | re.Pattern[str]") -> int:
        """
        Remove every entry whose key equals or starts with ``pattern``.

        A compiled regular expression is matched with ``search`` instead.

        Returns:
            Number of entries invalidated
        """
        if isinstance(pattern, re.Pattern):

            def matches(key: str) -> bool:
                return pattern.search(key) is not None

        else:

            def matches(key: str) -> bool:
                return key == pattern or key.startswith(pattern)

        keys_to_delete = [k for k in self._memory if matches(k)]
        for key in keys_to_delete:
            del self._memory[key]

        if self._persistent is not None:
            for key in self._persistent.keys():
                if matches(key):
                    self._persistent.delete(key)

        if keys_to_delete:
            logger.debug(f"Cache invalidated {len(keys_to_delete)} entries matching '{pattern}'")
        return len(keys_to_delete)

    def clear(self) -> None:
        """Clear all cache entries, persisted ones included."""
        count = len(self._memory)
        self._memory.clear()
        if self._persistent is not None:
            self._persistent.clear()
        logger.debug(f"Cache cleared: {count} entries removed")

    def cleanup(self, max_age: timedelta | None = None) -> int:
        """
        Sweep entries stored longer than ``max_age`` ago.

        Stale entries younger than that are kept so they can still be served
        while revalidating.
        """
        max_age = max_age or self._persisted_max_age
        now = self._clock()
        old_keys = [k for k, v in self._memory.items() if now - v.stored_at > max_age]
        for key in old_keys:
            self.delete(key)

        if old_keys:
            self._log(f"CLEANUP: {len(old_keys)} old entries removed")
        return len(old_keys)

    def load_persisted(self) -> int:
        """
        Restore entries from the persisted tier.

        Restored entries keep their original storage time and TTL, so the
        first read after a restart decides freshness. Corrupt or too-old
        records are deleted. Returns the number of entries restored.
        """
        if self._persistent is None:
            return 0

        now = self._clock()
        restored = 0
        for key in self._persistent.keys():
            try:
                record = self._persistent.get(key)
                stored_at = datetime.fromisoformat(record["stored_at"])
                ttl = timedelta(seconds=float(record["ttl"]))
                value = record["value"]
            except (OSError, ValueError, KeyError, TypeError):
                logger.warning(f"Dropping corrupt persisted cache entry: {key[:50]}")
                self._persistent.delete(key)
                continue

            if now - stored_at > self._persisted_max_age:
                self._persistent.delete(key)
                continue

            if key not in self._memory:
                self._memory[key] = CacheEntry(
                    key=key,
                    value=value,
                    stored_at=stored_at,
                    ttl=ttl,
                    from_persisted=True,
                )
                restored += 1

        logger.info(f"Cache loaded: {restored} items from persisted storage")
        return restored

    def _persist(self, entry: CacheEntry) -> None:
        """Write an entry to the persisted tier without binary-ish fields."""
        value = strip_binary_fields(entry.value, self._excluded_fields)
        record = {
            "value": value,
            "stored_at": entry.stored_at.isoformat(),
            "ttl": entry.ttl.total_seconds(),
        }

        size = len(json.dumps(record, default=str))
        if size > self._max_entry_bytes:
            logger.warning(
                f"Persisted cache entry {entry.key[:50]} is {size} bytes "
                f"(limit {self._max_entry_bytes}), writing anyway"
            )

        try:
            self._persistent.set(entry.key, record)
        except OSError as e:
            logger.warning(f"Persisted cache write failed for {entry.key[:50]}: {e}")
            self._cleanup_persisted()

    def _cleanup_persisted(self) -> None:
        """Remove the oldest half of the persisted entries to free space."""
        aged: list[tuple[str, str]] = []
        for key in self._persistent.keys():
            try:
                stored_at = self._persistent.get(key)["stored_at"]
            except (OSError, ValueError, KeyError, TypeError):
                stored_at = ""
            aged.append((stored_at, key))

        aged.sort()
        to_remove = aged[: (len(aged) + 1) // 2]
        for _, key in to_remove:
            self._persistent.delete(key)
        logger.info(f"Cleaned up {len(to_remove)} old persisted cache entries")

    def _evict_oldest(self) -> None:
        """Evict the entry with the oldest storage time."""
        if not self._memory:
            return

        oldest_key = min(self._memory, key=lambda k: self._memory[k].stored_at)
        del self._memory[oldest_key]
        self._stats.evictions += 1
        self._log(f"EVICT: {oldest_key[:50]}")

    def get_stats(self) -> CacheStats:
        """Get cache statistics."""
        self._stats.size = len(self._memory)
        self._stats.max_size = self._max_size
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[CacheStore] {message}")
