# src/tabula/cache/versioned.py
"""Two-tier cache with namespace version invalidation.

Tiers:
- Tier 1: process-local cachetools.TLRUCache, per-entry TTL
- Tier 2: shared CacheBackend (visible to every process)

Physical keys are ``<namespace>:v<version>:<key>``. An entry is valid while
``now - stored_at < ttl`` and its version equals the namespace's current
version; bump() moves the version, so earlier keys are never read again and
simply age out.

Substrate failures never fail a read. A broken cache backend or property
store is logged and the call falls through to the fetch function.
"""

from __future__ import annotations

import copy
import json
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog
from cachetools import TLRUCache

from tabula.cache.versions import NamespaceVersions
from tabula.contracts.errors import CacheBackendError, PropertyStoreError
from tabula.contracts.protocols import CacheBackend
from tabula.core.clock import DEFAULT_CLOCK, Clock
from tabula.core.config import CacheSettings

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """One cached value. ``value is None`` records a "not found" result."""

    key: str
    value: Any
    stored_at: float
    version: int
    ttl_seconds: int

    @property
    def expires_at(self) -> float:
        return self.stored_at + self.ttl_seconds

    def is_valid(self, now: float, current_version: int) -> bool:
        return now - self.stored_at < self.ttl_seconds and self.version == current_version

    def encode(self) -> bytes:
        return json.dumps(
            {
                "key": self.key,
                "value": self.value,
                "stored_at": self.stored_at,
                "version": self.version,
                "ttl_seconds": self.ttl_seconds,
            },
            ensure_ascii=False,
            separators=(",", ":"),
        ).encode("utf-8")

    @classmethod
    def decode(cls, raw: bytes) -> CacheEntry:
        data = json.loads(raw)
        return cls(
            key=data["key"],
            value=data["value"],
            stored_at=float(data["stored_at"]),
            version=int(data["version"]),
            ttl_seconds=int(data["ttl_seconds"]),
        )


@dataclass
class CacheStats:
    """Counters for one VersionedCache instance."""

    local_hits: int = 0
    shared_hits: int = 0
    misses: int = 0
    oversized: int = 0
    errors: int = 0


class VersionedCache:
    """Read-through two-tier cache.

    Values must be JSON-compatible (they cross process boundaries in tier 2).
    Reads return deep copies, so callers may mutate what they get back.
    """

    def __init__(
        self,
        backend: CacheBackend,
        versions: NamespaceVersions,
        *,
        default_ttl: int = 900,
        negative_ttl: int = 60,
        max_entry_bytes: int = 100_000,
        local_max_entries: int = 512,
        clock: Clock | None = None,
    ) -> None:
        if negative_ttl >= default_ttl:
            raise ValueError(f"negative_ttl ({negative_ttl}) must be shorter than default_ttl ({default_ttl})")
        self._backend = backend
        self._versions = versions
        self.default_ttl = default_ttl
        self.negative_ttl = negative_ttl
        self.max_entry_bytes = max_entry_bytes
        self._clock = clock or DEFAULT_CLOCK
        self._local: TLRUCache[str, CacheEntry] = TLRUCache(
            maxsize=local_max_entries,
            ttu=lambda _key, entry, _now: entry.expires_at,
            timer=self._clock.time,
        )
        self._local_lock = threading.Lock()
        self.stats = CacheStats()

    @classmethod
    def from_settings(
        cls,
        backend: CacheBackend,
        versions: NamespaceVersions,
        settings: CacheSettings,
        clock: Clock | None = None,
    ) -> VersionedCache:
        return cls(
            backend,
            versions,
            default_ttl=settings.record_ttl_seconds,
            negative_ttl=settings.negative_ttl_seconds,
            max_entry_bytes=settings.max_entry_bytes,
            local_max_entries=settings.local_max_entries,
            clock=clock,
        )

    @staticmethod
    def physical_key(namespace: str, version: int, key: str) -> str:
        return f"{namespace}:v{version}:{key}"

    def current_version(self, namespace: str) -> int:
        """Current namespace version.

        Raises:
            PropertyStoreError: If the property store fails
        """
        return self._versions.current(namespace)

    def _version_or_none(self, namespace: str) -> int | None:
        try:
            return self._versions.current(namespace)
        except PropertyStoreError as e:
            self.stats.errors += 1
            logger.warning("Namespace version unreadable, bypassing cache", namespace=namespace, error=str(e))
            return None

    def _lookup(self, physical: str, version: int) -> tuple[bool, Any]:
        now = self._clock.time()
        with self._local_lock:
            entry = self._local.get(physical)
        if entry is not None and entry.is_valid(now, version):
            self.stats.local_hits += 1
            return True, copy.deepcopy(entry.value)

        try:
            raw = self._backend.get(physical)
        except CacheBackendError as e:
            self.stats.errors += 1
            logger.warning("Shared cache read failed", key=physical, error=str(e))
            raw = None
        if raw is None:
            return False, None

        try:
            shared = CacheEntry.decode(raw)
        except (ValueError, KeyError, TypeError) as e:
            self.stats.errors += 1
            logger.warning("Shared cache entry corrupt, ignoring", key=physical, error=str(e))
            return False, None
        if not shared.is_valid(now, version):
            return False, None

        with self._local_lock:
            self._local[physical] = shared
        self.stats.shared_hits += 1
        return True, copy.deepcopy(shared.value)

    def _store(self, physical: str, value: Any, version: int, ttl: int) -> None:
        entry = CacheEntry(key=physical, value=copy.deepcopy(value), stored_at=self._clock.time(), version=version, ttl_seconds=ttl)
        with self._local_lock:
            self._local[physical] = entry

        encoded = entry.encode()
        if len(encoded) > self.max_entry_bytes:
            self.stats.oversized += 1
            logger.info("Entry too large for shared cache, kept locally", key=physical, size=len(encoded), limit=self.max_entry_bytes)
            return
        try:
            self._backend.put(physical, encoded, ttl)
        except CacheBackendError as e:
            self.stats.errors += 1
            logger.warning("Shared cache write failed", key=physical, error=str(e))

    def get_or_fetch(
        self,
        namespace: str,
        key: str,
        fetch: Callable[[], T | None],
        ttl: int | None = None,
        negative_ttl: int | None = None,
    ) -> T | None:
        """Return the cached value, or fetch, cache and return it.

        A fetch result of None means "not found" and is cached with the
        (shorter) negative TTL. Exceptions from fetch propagate and nothing
        is cached.
        """
        version = self._version_or_none(namespace)
        if version is None:
            return fetch()

        physical = self.physical_key(namespace, version, key)
        found, value = self._lookup(physical, version)
        if found:
            return value  # type: ignore[no-any-return]

        self.stats.misses += 1
        fetched = fetch()
        if fetched is None:
            self._store(physical, None, version, self.negative_ttl if negative_ttl is None else negative_ttl)
        else:
            self._store(physical, fetched, version, self.default_ttl if ttl is None else ttl)
        return fetched

    def put(self, namespace: str, key: str, value: Any, ttl: int | None = None) -> None:
        """Write a value to both tiers under the current version."""
        version = self._version_or_none(namespace)
        if version is None:
            return
        self._store(self.physical_key(namespace, version, key), value, version, self.default_ttl if ttl is None else ttl)

    def remove(self, namespace: str, key: str) -> None:
        """Drop one key from both tiers (current version only)."""
        version = self._version_or_none(namespace)
        if version is None:
            return
        physical = self.physical_key(namespace, version, key)
        with self._local_lock:
            self._local.pop(physical, None)
        try:
            self._backend.remove(physical)
        except CacheBackendError as e:
            self.stats.errors += 1
            logger.warning("Shared cache remove failed", key=physical, error=str(e))

    def bump(self, namespace: str) -> int:
        """Invalidate every entry of a namespace, in every process.

        Raises:
            PropertyStoreError: If the version counter cannot be incremented
        """
        new_version = self._versions.bump(namespace)
        prefix = f"{namespace}:v"
        with self._local_lock:
            for physical in [k for k in self._local if k.startswith(prefix)]:
                self._local.pop(physical, None)
        logger.debug("Cache namespace bumped", namespace=namespace, version=new_version)
        return new_version

    def clear_local(self) -> None:
        """Empty tier 1 only."""
        with self._local_lock:
            self._local.clear()
