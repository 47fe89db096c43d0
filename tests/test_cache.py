"""Tests for CacheStore, cache keys, route policies and the persisted tier."""

import json
import re
from datetime import timedelta

import pytest

from krios.services.cache import (
    CachePolicyTable,
    CacheStore,
    RoutePolicy,
    make_cache_key,
    strip_binary_fields,
)
from krios.services.errors import CacheError
from krios.services.storage import JsonFileStore, MemoryStore


class FullStore(MemoryStore):
    """A store whose writes always fail, like a full localStorage."""

    def set(self, key, value):
        raise OSError("quota exceeded")


class TestFreshness:
    def test_fresh_entry_is_returned(self, clock):
        cache = CacheStore(clock=clock)
        cache.set("/rooms", {"rooms": [1]}, ttl=timedelta(milliseconds=1000))

        assert cache.get("/rooms") == {"rooms": [1]}
        assert cache.has("/rooms")

    def test_entry_past_ttl_is_absent_for_get(self, clock):
        cache = CacheStore(clock=clock)
        cache.set("/rooms", "v", ttl=timedelta(milliseconds=1000))

        clock.advance(ms=1001)

        assert cache.get("/rooms") is None
        assert not cache.has("/rooms")
        assert cache.has_any("/rooms")

    def test_stale_entry_is_still_available_flagged(self, clock):
        cache = CacheStore(clock=clock)
        cache.set("/rooms", "v", ttl=timedelta(milliseconds=1000))

        clock.advance(ms=1001)
        result = cache.get_with_staleness("/rooms")

        assert result is not None
        assert result.data == "v"
        assert result.is_stale is True

    def test_entry_exactly_at_ttl_is_still_fresh(self, clock):
        cache = CacheStore(clock=clock)
        cache.set("/rooms", "v", ttl=timedelta(seconds=1))

        clock.advance(seconds=1)

        assert cache.get("/rooms") == "v"

    def test_set_resets_storage_time(self, clock):
        cache = CacheStore(clock=clock)
        cache.set("/rooms", "old", ttl=timedelta(seconds=10))
        clock.advance(seconds=8)
        cache.set("/rooms", "new", ttl=timedelta(seconds=10))
        clock.advance(seconds=8)

        assert cache.get("/rooms") == "new"

    def test_missing_key(self, clock):
        cache = CacheStore(clock=clock)

        assert cache.get("/nope") is None
        assert cache.get_with_staleness("/nope") is None
        assert cache.get_stats().misses == 2


class TestInvalidation:
    def test_prefix_invalidation_spares_unrelated_keys(self, clock):
        cache = CacheStore(clock=clock)
        ttl = timedelta(minutes=5)
        cache.set("/rooms", 1, ttl)
        cache.set("/rooms/abc", 2, ttl)
        cache.set("/rooms/abc/tasks?date=%222026-01-01%22", 3, ttl)
        cache.set("/friends", 4, ttl)

        removed = cache.invalidate("/rooms")

        assert removed == 3
        assert cache.get("/rooms") is None
        assert cache.get("/rooms/abc") is None
        assert cache.get("/friends") == 4

    def test_regex_invalidation(self, clock):
        cache = CacheStore(clock=clock)
        ttl = timedelta(minutes=5)
        cache.set("/rooms/1/chat", 1, ttl)
        cache.set("/rooms/2/chat", 2, ttl)
        cache.set("/rooms/2", 3, ttl)

        assert cache.invalidate(re.compile(r"/chat$")) == 2
        assert cache.get("/rooms/2") == 3

    def test_clear_removes_everything(self, clock):
        cache = CacheStore(clock=clock, persistent=MemoryStore())
        cache.set("/rooms", 1, timedelta(minutes=1), persist=True)
        cache.set("/friends", 2, timedelta(minutes=1))

        cache.clear()

        assert cache.get_stats().size == 0
        assert cache.load_persisted() == 0

    def test_invalidation_reaches_persisted_tier(self, clock):
        store = MemoryStore()
        cache = CacheStore(clock=clock, persistent=store)
        cache.set("/rooms", 1, timedelta(minutes=1), persist=True)

        cache.invalidate("/rooms")

        assert store.keys() == []


class TestEviction:
    def test_oldest_entry_is_evicted_at_capacity(self, clock):
        cache = CacheStore(max_size=2, clock=clock)
        cache.set("a", 1, timedelta(minutes=1))
        clock.advance(seconds=1)
        cache.set("b", 2, timedelta(minutes=1))
        clock.advance(seconds=1)
        cache.set("c", 3, timedelta(minutes=1))

        assert not cache.has_any("a")
        assert cache.get("b") == 2
        assert cache.get("c") == 3
        assert cache.get_stats().evictions == 1

    def test_overwrite_does_not_evict(self, clock):
        cache = CacheStore(max_size=2, clock=clock)
        cache.set("a", 1, timedelta(minutes=1))
        cache.set("b", 2, timedelta(minutes=1))
        cache.set("a", 3, timedelta(minutes=1))

        assert cache.get("b") == 2
        assert cache.get_stats().evictions == 0

    def test_cleanup_sweeps_only_old_entries(self, clock):
        cache = CacheStore(clock=clock, persisted_max_age=timedelta(hours=24))
        cache.set("old", 1, timedelta(minutes=1))
        clock.advance(seconds=23 * 3600)
        cache.set("recent", 2, timedelta(minutes=1))
        clock.advance(seconds=2 * 3600)

        assert cache.cleanup() == 1
        assert not cache.has_any("old")
        # Stale but young enough to serve while revalidating
        assert cache.get_with_staleness("recent").is_stale


class TestCacheKeys:
    def test_param_order_does_not_matter(self):
        a = make_cache_key("GET", "/rooms", {"b": 2, "a": "x"})
        b = make_cache_key("get", "/rooms", {"a": "x", "b": 2})

        assert a == b
        assert a.startswith("/rooms?")

    def test_different_params_give_different_keys(self):
        assert make_cache_key("GET", "/rooms", {"page": 1}) != make_cache_key(
            "GET", "/rooms", {"page": 2}
        )
        assert make_cache_key("GET", "/rooms", {"page": 1}) != make_cache_key(
            "GET", "/rooms", {"page": "1"}
        )

    def test_read_without_params_is_the_path(self):
        assert make_cache_key("GET", "/rooms") == "/rooms"

    def test_long_query_is_hashed_but_keeps_path(self):
        key = make_cache_key("GET", "/rooms/search", {"q": "x" * 500})

        assert key.startswith("/rooms/search?sha256=")
        assert len(key) < 100

    def test_write_keys_include_method_and_body(self):
        a = make_cache_key("POST", "/rooms", json_body={"name": "A"})
        b = make_cache_key("POST", "/rooms", json_body={"name": "B"})
        c = make_cache_key("PUT", "/rooms", json_body={"name": "A"})

        assert len({a, b, c}) == 3
        assert a == make_cache_key("POST", "/rooms", json_body={"name": "A"})


class TestPolicyTable:
    def test_exact_match_beats_prefix(self):
        table = CachePolicyTable(
            [
                RoutePolicy("/rooms/", timedelta(seconds=60), exact=False),
                RoutePolicy("/rooms/pending", timedelta(seconds=5)),
            ]
        )

        assert table.match("/rooms/pending").ttl == timedelta(seconds=5)
        assert table.match("/rooms/abc").ttl == timedelta(seconds=60)

    def test_longest_prefix_wins(self):
        table = CachePolicyTable(
            [
                RoutePolicy("/rooms/", timedelta(seconds=60), exact=False),
                RoutePolicy("/rooms/abc/", timedelta(seconds=10), exact=False),
            ]
        )

        assert table.match("/rooms/abc/chat").ttl == timedelta(seconds=10)

    def test_unregistered_route_is_not_cached(self):
        assert CachePolicyTable().match("/push/subscribe") is None

    def test_default_table(self):
        table = CachePolicyTable()

        assert table.match("/rooms").persistent is True
        assert table.match("/notifications").ttl == timedelta(seconds=30)
        assert table.match("/rooms/123").exact is False


class TestPersistedTier:
    def test_restored_entries_keep_their_age(self, clock):
        store = MemoryStore()
        first = CacheStore(clock=clock, persistent=store)
        first.set("/rooms", {"rooms": []}, timedelta(minutes=2), persist=True)

        clock.advance(seconds=60)
        second = CacheStore(clock=clock, persistent=store)
        assert second.load_persisted() == 1
        result = second.get_with_staleness("/rooms")
        assert result.from_cache == "persisted"
        assert result.is_stale is False

        clock.advance(seconds=61)
        assert second.get_with_staleness("/rooms").is_stale is True

    def test_entries_older_than_max_age_are_dropped(self, clock):
        store = MemoryStore()
        CacheStore(clock=clock, persistent=store).set(
            "/rooms", 1, timedelta(minutes=2), persist=True
        )

        clock.advance(seconds=25 * 3600)
        cache = CacheStore(
            clock=clock, persistent=store, persisted_max_age=timedelta(hours=24)
        )

        assert cache.load_persisted() == 0
        assert store.keys() == []

    def test_corrupt_entries_are_dropped(self, clock):
        store = MemoryStore()
        store.set("/rooms", {"value": 1})  # no stored_at / ttl
        cache = CacheStore(clock=clock, persistent=store)

        assert cache.load_persisted() == 0
        assert store.keys() == []

    def test_non_persistent_set_is_memory_only(self, clock):
        store = MemoryStore()
        cache = CacheStore(clock=clock, persistent=store)
        cache.set("/notifications", 1, timedelta(seconds=30))

        assert store.keys() == []

    def test_binary_fields_are_stripped_not_dropped(self, clock):
        store = MemoryStore()
        cache = CacheStore(clock=clock, persistent=store, max_entry_bytes=50)
        profile = {
            "user": {
                "username": "nova",
                "avatar": "data:image/png;base64," + "A" * 5000,
                "banner": "data:image/png;base64,BBBB",
                "friends": [{"username": "vega", "avatar": "x"}],
            }
        }

        cache.set("/auth/profile", profile, timedelta(minutes=10), persist=True)

        persisted = store.get("/auth/profile")["value"]
        assert persisted == {"user": {"username": "nova", "friends": [{"username": "vega"}]}}
        # The in-memory copy is untouched
        assert cache.get("/auth/profile")["user"]["avatar"].startswith("data:")

    def test_failed_write_removes_oldest_half(self, clock):
        store = FullStore()
        for i in range(4):
            MemoryStore.set(
                store,
                f"/k{i}",
                {"value": i, "stored_at": (clock() + timedelta(seconds=i)).isoformat(), "ttl": 60},
            )
        cache = CacheStore(clock=clock, persistent=store)

        cache.set("/rooms", 1, timedelta(minutes=2), persist=True)

        assert sorted(store.keys()) == ["/k2", "/k3"]
        assert cache.get("/rooms") == 1


class TestStripBinaryFields:
    def test_nested_lists_and_dicts(self):
        value = [{"avatar": "a", "n": [{"icon": "data:x", "ok": 1}]}]

        assert strip_binary_fields(value, frozenset({"avatar"})) == [{"n": [{"ok": 1}]}]


class TestJsonFileStore:
    def test_round_trip_and_keys(self, tmp_path):
        store = JsonFileStore(tmp_path)
        store.set("/rooms", {"a": 1})
        store.set("/auth/profile", [1, 2])

        assert store.get("/rooms") == {"a": 1}
        assert sorted(store.keys()) == ["/auth/profile", "/rooms"]

        store.delete("/rooms")
        assert store.get("/rooms") is None

        store.clear()
        assert store.keys() == []

    def test_unreadable_file_is_removed(self, tmp_path):
        store = JsonFileStore(tmp_path)
        (tmp_path / "krios_cache_broken.json").write_text("{not json")

        assert store.keys() == []
        assert not (tmp_path / "krios_cache_broken.json").exists()

    def test_prefixes_are_isolated(self, tmp_path):
        cache_store = JsonFileStore(tmp_path, prefix="krios_cache_")
        auth_store = JsonFileStore(tmp_path, prefix="krios_auth_")
        auth_store.set("token", "abc")

        cache_store.clear()

        assert auth_store.get("token") == "abc"

    def test_unusable_directory_raises_cache_error(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text(json.dumps({}))

        with pytest.raises(CacheError):
            JsonFileStore(blocker / "sub")
