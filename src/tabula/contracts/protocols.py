# src/tabula/contracts/protocols.py
"""Protocols for the external collaborators of the data-access layer.

Everything that must be visible across processes (circuit state, tier-2
cache, namespace versions, locks) is reached through these protocols, so
components receive their shared state by injection rather than through
module-level globals.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from tabula.contracts.table import TableRequest, TableResponse


@runtime_checkable
class TableTransport(Protocol):
    """Sends one request to the remote table.

    Returns the HTTP-style response for every status (including 429 and
    5xx). Raises TransportFailure only when no response was received.
    """

    def send(self, request: TableRequest) -> TableResponse: ...

    def close(self) -> None: ...


@runtime_checkable
class CacheBackend(Protocol):
    """Shared cache service with per-entry TTL and no wildcard delete.

    Implementations raise CacheBackendError on failure.
    """

    def get(self, key: str) -> bytes | None: ...

    def put(self, key: str, value: bytes, ttl_seconds: int) -> None: ...

    def remove(self, key: str) -> None: ...


@runtime_checkable
class PropertyStore(Protocol):
    """Small, synchronous, persisted key-value store.

    Used for cache version counters; not for bulk data. Implementations
    raise PropertyStoreError on failure. increment() must be atomic.
    """

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def increment(self, key: str) -> int: ...

    def delete(self, key: str) -> None: ...


@runtime_checkable
class LockService(Protocol):
    """Process-external named mutex.

    Ownership is per calling thread: release() and renew() must run on the
    thread that acquired. Implementations raise LockServiceError on failure.
    """

    def try_acquire(self, name: str, timeout_ms: int) -> bool: ...

    def renew(self, name: str) -> bool: ...

    def release(self, name: str) -> None: ...
