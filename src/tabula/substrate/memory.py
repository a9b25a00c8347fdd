# src/tabula/substrate/memory.py
"""Process-local substrate for tests and single-process deployments.

Thread-safe, but visible only inside the current process: a multi-process
deployment must use the SQL substrate.
"""

from __future__ import annotations

import threading

from tabula.contracts.errors import LockServiceError, PropertyStoreError
from tabula.core.clock import DEFAULT_CLOCK, Clock


class InMemoryCacheBackend:
    """CacheBackend backed by a dict with per-entry expiry.

    Keys from superseded namespace versions are never read again, so a put()
    sweeps every expired entry once per sweep_interval_seconds.
    """

    def __init__(self, *, clock: Clock | None = None, sweep_interval_seconds: float = 300.0) -> None:
        self._clock = clock or DEFAULT_CLOCK
        self._entries: dict[str, tuple[bytes, float]] = {}
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval_seconds
        self._next_sweep = self._clock.time() + sweep_interval_seconds

    def get(self, key: str) -> bytes | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock.time():
                del self._entries[key]
                return None
            return value

    def put(self, key: str, value: bytes, ttl_seconds: int) -> None:
        now = self._clock.time()
        with self._lock:
            self._entries[key] = (value, now + ttl_seconds)
            if now < self._next_sweep:
                return
            self._next_sweep = now + self._sweep_interval
            self._drop_expired(now)

    def remove(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def _drop_expired(self, now: float) -> int:
        expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def purge_expired(self) -> int:
        """Delete expired entries. Returns the number removed."""
        with self._lock:
            return self._drop_expired(self._clock.time())

    def keys(self) -> list[str]:
        """Live keys (test inspection)."""
        now = self._clock.time()
        with self._lock:
            return [key for key, (_, expires_at) in self._entries.items() if expires_at > now]


class InMemoryPropertyStore:
    """PropertyStore backed by a dict."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value

    def increment(self, key: str) -> int:
        with self._lock:
            raw = self._values.get(key, "0")
            try:
                value = int(raw) + 1
            except ValueError as e:
                raise PropertyStoreError(f"increment {key!r}: stored value {raw!r} is not an integer") from e
            self._values[key] = str(value)
            return value

    def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)


class InMemoryLockService:
    """LockService over a condition variable.

    Non-reentrant: a thread that already holds a name waits like any other.
    """

    def __init__(self) -> None:
        self._holders: dict[str, int] = {}
        self._condition = threading.Condition()

    def try_acquire(self, name: str, timeout_ms: int) -> bool:
        me = threading.get_ident()
        with self._condition:
            acquired = self._condition.wait_for(lambda: name not in self._holders, timeout=timeout_ms / 1000)
            if not acquired:
                return False
            self._holders[name] = me
            return True

    def renew(self, name: str) -> bool:
        """Whether the calling thread still holds ``name`` (locks here never expire)."""
        with self._condition:
            return self._holders.get(name) == threading.get_ident()

    def release(self, name: str) -> None:
        me = threading.get_ident()
        with self._condition:
            holder = self._holders.get(name)
            if holder != me:
                raise LockServiceError(f"lock {name!r} is not held by thread {me}")
            del self._holders[name]
            self._condition.notify_all()

    def is_held(self, name: str) -> bool:
        with self._condition:
            return name in self._holders
