# tests/unit/cache/test_versioned.py
"""Tests for the two-tier versioned cache."""

from collections.abc import Callable
from typing import Any

import pytest

from tabula.cache import CacheEntry, NamespaceVersions, VersionedCache
from tabula.contracts.errors import CacheBackendError, PropertyStoreError
from tabula.core.clock import MockClock
from tabula.core.config import CacheSettings
from tabula.substrate import InMemoryCacheBackend, InMemoryPropertyStore


class Fetcher:
    """Counts calls to a fetch function."""

    def __init__(self, value: Any) -> None:
        self.value = value
        self.calls = 0

    def __call__(self) -> Any:
        self.calls += 1
        return self.value


class FailingBackend(InMemoryCacheBackend):
    def get(self, key: str) -> bytes | None:
        raise CacheBackendError("read failed")

    def put(self, key: str, value: bytes, ttl_seconds: int) -> None:
        raise CacheBackendError("write failed")


class FailingProperties(InMemoryPropertyStore):
    def get(self, key: str) -> str | None:
        raise PropertyStoreError("properties down")


@pytest.fixture
def backend(clock: MockClock) -> InMemoryCacheBackend:
    return InMemoryCacheBackend(clock=clock)


@pytest.fixture
def properties() -> InMemoryPropertyStore:
    return InMemoryPropertyStore()


@pytest.fixture
def make_cache(
    backend: InMemoryCacheBackend, properties: InMemoryPropertyStore, clock: MockClock
) -> Callable[..., VersionedCache]:
    def factory(**kwargs: Any) -> VersionedCache:
        return VersionedCache(backend, NamespaceVersions(properties), clock=clock, **kwargs)

    return factory


@pytest.fixture
def cache(make_cache: Callable[..., VersionedCache]) -> VersionedCache:
    return make_cache()


class TestCacheEntry:
    def test_validity_window(self) -> None:
        entry = CacheEntry(key="k", value=1, stored_at=100.0, version=2, ttl_seconds=10)
        assert entry.is_valid(109.9, 2)
        assert not entry.is_valid(110.0, 2)
        assert not entry.is_valid(105.0, 3)

    def test_encoding_round_trip(self) -> None:
        entry = CacheEntry(key="records:v0:id:r1", value={"a": [1]}, stored_at=1.5, version=0, ttl_seconds=60)
        assert CacheEntry.decode(entry.encode()) == entry


class TestReadThrough:
    def test_miss_then_local_hit(self, cache: VersionedCache) -> None:
        fetch = Fetcher({"n": 1})
        assert cache.get_or_fetch("records", "id:r1", fetch) == {"n": 1}
        assert cache.get_or_fetch("records", "id:r1", fetch) == {"n": 1}
        assert fetch.calls == 1
        assert cache.stats.misses == 1
        assert cache.stats.local_hits == 1

    def test_shared_tier_serves_other_instances(self, make_cache: Callable[..., VersionedCache]) -> None:
        writer = make_cache()
        reader = make_cache()
        writer.get_or_fetch("records", "id:r1", Fetcher("value"))
        fetch = Fetcher("other")
        assert reader.get_or_fetch("records", "id:r1", fetch) == "value"
        assert fetch.calls == 0
        assert reader.stats.shared_hits == 1

    def test_reads_are_copies(self, cache: VersionedCache) -> None:
        cache.get_or_fetch("records", "k", Fetcher({"tags": ["a"]}))
        first = cache.get_or_fetch("records", "k", Fetcher(None))
        assert first is not None
        first["tags"].append("b")
        assert cache.get_or_fetch("records", "k", Fetcher(None)) == {"tags": ["a"]}

    def test_entry_expires(self, cache: VersionedCache, clock: MockClock) -> None:
        fetch = Fetcher(1)
        cache.get_or_fetch("records", "k", fetch, ttl=30)
        clock.advance(30)
        cache.get_or_fetch("records", "k", fetch, ttl=30)
        assert fetch.calls == 2

    def test_explicit_zero_ttl_is_not_replaced_by_default(self, cache: VersionedCache) -> None:
        fetch = Fetcher({"n": 1})
        cache.get_or_fetch("records", "k", fetch, ttl=0)
        cache.get_or_fetch("records", "k", fetch, ttl=0)
        assert fetch.calls == 2

        missing = Fetcher(None)
        cache.get_or_fetch("records", "owner:x", missing, negative_ttl=0)
        cache.get_or_fetch("records", "owner:x", missing, negative_ttl=0)
        assert missing.calls == 2

    def test_fetch_errors_propagate_and_cache_nothing(self, cache: VersionedCache) -> None:
        def failing() -> Any:
            raise RuntimeError("remote down")

        with pytest.raises(RuntimeError, match="remote down"):
            cache.get_or_fetch("records", "k", failing)
        fetch = Fetcher(5)
        assert cache.get_or_fetch("records", "k", fetch) == 5
        assert fetch.calls == 1


class TestNegativeCaching:
    def test_none_is_cached_with_negative_ttl(self, cache: VersionedCache, clock: MockClock) -> None:
        fetch = Fetcher(None)
        assert cache.get_or_fetch("records", "owner:x", fetch) is None
        assert cache.get_or_fetch("records", "owner:x", fetch) is None
        assert fetch.calls == 1

        clock.advance(cache.negative_ttl)
        cache.get_or_fetch("records", "owner:x", fetch)
        assert fetch.calls == 2

    def test_negative_ttl_must_be_shorter(self, make_cache: Callable[..., VersionedCache]) -> None:
        with pytest.raises(ValueError, match="negative_ttl"):
            make_cache(default_ttl=60, negative_ttl=60)


class TestBump:
    def test_old_keys_never_returned(self, make_cache: Callable[..., VersionedCache]) -> None:
        local = make_cache()
        remote = make_cache()
        local.get_or_fetch("records", "id:r1", Fetcher("old"))
        remote.get_or_fetch("records", "id:r1", Fetcher("old"))

        assert remote.bump("records") == 1

        fetch = Fetcher("new")
        assert local.get_or_fetch("records", "id:r1", fetch) == "new"
        assert remote.get_or_fetch("records", "id:r1", Fetcher("unused")) == "new"
        assert fetch.calls == 1

    def test_bump_is_per_namespace(self, cache: VersionedCache) -> None:
        cache.get_or_fetch("other", "k", Fetcher("kept"))
        cache.bump("records")
        fetch = Fetcher("refetched")
        assert cache.get_or_fetch("other", "k", fetch) == "kept"
        assert fetch.calls == 0

    def test_physical_key_embeds_version(self, cache: VersionedCache, backend: InMemoryCacheBackend) -> None:
        cache.bump("records")
        cache.put("records", "id:r1", {"a": 1})
        assert backend.keys() == ["records:v1:id:r1"]

    def test_bump_failure_raises(self, backend: InMemoryCacheBackend, clock: MockClock) -> None:
        class BrokenIncrement(InMemoryPropertyStore):
            def increment(self, key: str) -> int:
                raise PropertyStoreError("increment failed")

        cache = VersionedCache(backend, NamespaceVersions(BrokenIncrement()), clock=clock)
        with pytest.raises(PropertyStoreError):
            cache.bump("records")


class TestLimitsAndFailures:
    def test_oversized_entry_stays_local(self, make_cache: Callable[..., VersionedCache], backend: InMemoryCacheBackend) -> None:
        cache = make_cache(max_entry_bytes=64)
        fetch = Fetcher("x" * 200)
        cache.get_or_fetch("records", "index", fetch)
        cache.get_or_fetch("records", "index", fetch)
        assert fetch.calls == 1
        assert backend.keys() == []
        assert cache.stats.oversized == 1

    def test_backend_failure_falls_through(self, properties: InMemoryPropertyStore, clock: MockClock) -> None:
        cache = VersionedCache(FailingBackend(clock=clock), NamespaceVersions(properties), clock=clock)
        fetch = Fetcher("value")
        assert cache.get_or_fetch("records", "k", fetch) == "value"
        assert cache.stats.errors == 2
        # Tier 1 still holds the value
        assert cache.get_or_fetch("records", "k", fetch) == "value"
        assert fetch.calls == 1

    def test_property_store_failure_bypasses_cache(self, backend: InMemoryCacheBackend, clock: MockClock) -> None:
        cache = VersionedCache(backend, NamespaceVersions(FailingProperties()), clock=clock)
        fetch = Fetcher("value")
        assert cache.get_or_fetch("records", "k", fetch) == "value"
        assert cache.get_or_fetch("records", "k", fetch) == "value"
        assert fetch.calls == 2
        assert backend.keys() == []

    def test_corrupt_shared_entry_is_ignored(self, cache: VersionedCache, backend: InMemoryCacheBackend) -> None:
        backend.put("records:v0:k", b"\xff garbage", 60)
        fetch = Fetcher("fresh")
        assert cache.get_or_fetch("records", "k", fetch) == "fresh"
        assert fetch.calls == 1

    def test_remove_drops_both_tiers(self, cache: VersionedCache, backend: InMemoryCacheBackend) -> None:
        cache.put("records", "k", 1)
        cache.remove("records", "k")
        assert backend.keys() == []
        fetch = Fetcher(2)
        assert cache.get_or_fetch("records", "k", fetch) == 2

    def test_clear_local_keeps_shared(self, cache: VersionedCache) -> None:
        cache.put("records", "k", 1)
        cache.clear_local()
        assert cache.get_or_fetch("records", "k", Fetcher(2)) == 1
        assert cache.stats.shared_hits == 1

    def test_from_settings(self, backend: InMemoryCacheBackend, properties: InMemoryPropertyStore) -> None:
        settings = CacheSettings(record_ttl_seconds=300, negative_ttl_seconds=30, max_entry_bytes=2048)
        cache = VersionedCache.from_settings(backend, NamespaceVersions(properties), settings)
        assert (cache.default_ttl, cache.negative_ttl, cache.max_entry_bytes) == (300, 30, 2048)


class TestNamespaceVersions:
    def test_starts_at_zero(self, properties: InMemoryPropertyStore) -> None:
        assert NamespaceVersions(properties).current("records") == 0

    def test_bump_increments(self, properties: InMemoryPropertyStore) -> None:
        versions = NamespaceVersions(properties)
        versions.bump("records")
        assert versions.bump("records") == 2
        assert properties.get("cache_version:records") == "2"

    def test_non_integer_raises(self, properties: InMemoryPropertyStore) -> None:
        properties.set("cache_version:records", "abc")
        with pytest.raises(PropertyStoreError):
            NamespaceVersions(properties).current("records")
