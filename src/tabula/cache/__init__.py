# src/tabula/cache/__init__.py
"""Two-tier cache with namespace version invalidation."""

from tabula.cache.versioned import CacheEntry, CacheStats, VersionedCache
from tabula.cache.versions import NamespaceVersions

__all__ = ["CacheEntry", "CacheStats", "NamespaceVersions", "VersionedCache"]
