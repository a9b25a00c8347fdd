# src/tabula/resilience/circuit.py
"""Circuit breaker over rate-limit responses.

Shared state, so every process calling the same quota sees one circuit:
- ``circuit:<name>`` in the cache backend: the window, holding open_until_ms
  and the last written state. Last-writer-wins, with its own TTL, so a
  stale window never outlives state_ttl_seconds.
- ``circuit:<name>:errors`` in the property store: the consecutive error
  count, bumped with the store's atomic increment so concurrent rate limits
  from several processes are all counted.

The counter only means something while the window exists. When the window
has expired, the next rate limit starts a new count from zero.

Only rate-limit responses move the breaker. Transport failures and other
upstream errors leave it alone.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass

import structlog

from tabula.contracts.errors import CacheBackendError, CircuitOpen, PropertyStoreError
from tabula.contracts.protocols import CacheBackend, PropertyStore
from tabula.core.clock import DEFAULT_CLOCK, Clock, now_ms
from tabula.core.config import CircuitSettings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class CircuitState:
    """Shared breaker state. The all-zero state is a closed, healthy circuit."""

    consecutive_errors: int = 0
    open_until_ms: int = 0

    @property
    def is_clean(self) -> bool:
        return self.consecutive_errors == 0 and self.open_until_ms == 0

    def is_open(self, at_ms: int) -> bool:
        return at_ms < self.open_until_ms

    def encode(self) -> bytes:
        return json.dumps({"consecutive_errors": self.consecutive_errors, "open_until_ms": self.open_until_ms}).encode("utf-8")

    @classmethod
    def decode(cls, raw: bytes) -> CircuitState:
        data = json.loads(raw)
        return cls(consecutive_errors=int(data["consecutive_errors"]), open_until_ms=int(data["open_until_ms"]))


class CircuitBreaker:
    """Trips after failure_threshold consecutive rate limits.

    Example:
        breaker = CircuitBreaker(substrate.cache, substrate.properties, "sheets")
        breaker.ensure_closed()      # raises CircuitOpen while open
        ...
        breaker.record_rate_limited()
    """

    def __init__(
        self,
        backend: CacheBackend,
        properties: PropertyStore,
        name: str = "table",
        *,
        failure_threshold: int = 3,
        cool_down_ms: int = 60_000,
        state_ttl_seconds: int = 60,
        clock: Clock | None = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {failure_threshold}")
        self._backend = backend
        self._properties = properties
        self.name = name
        self.failure_threshold = failure_threshold
        self.cool_down_ms = cool_down_ms
        self.state_ttl_seconds = state_ttl_seconds
        self._clock = clock or DEFAULT_CLOCK
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        backend: CacheBackend,
        properties: PropertyStore,
        settings: CircuitSettings,
        name: str = "table",
        clock: Clock | None = None,
    ) -> CircuitBreaker:
        return cls(
            backend,
            properties,
            name,
            failure_threshold=settings.failure_threshold,
            cool_down_ms=settings.cool_down_ms,
            state_ttl_seconds=settings.state_ttl_seconds,
            clock=clock,
        )

    @property
    def key(self) -> str:
        return f"circuit:{self.name}"

    @property
    def counter_key(self) -> str:
        return f"circuit:{self.name}:errors"

    # === Shared state access ===

    def _read_window(self) -> CircuitState | None:
        try:
            raw = self._backend.get(self.key)
        except CacheBackendError as e:
            logger.warning("Circuit state unreadable, treating as closed", circuit=self.name, error=str(e))
            return None
        if raw is None:
            return None
        try:
            return CircuitState.decode(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Circuit state corrupt, treating as closed", circuit=self.name, error=str(e))
            return None

    def _write_window(self, state: CircuitState) -> None:
        try:
            self._backend.put(self.key, state.encode(), self.state_ttl_seconds)
        except CacheBackendError as e:
            logger.warning("Circuit state write failed", circuit=self.name, error=str(e))

    def _read_counter(self, fallback: int) -> int:
        try:
            raw = self._properties.get(self.counter_key)
            return int(raw) if raw is not None else 0
        except (PropertyStoreError, ValueError) as e:
            logger.warning("Circuit error counter unreadable", circuit=self.name, error=str(e))
            return fallback

    def _set_counter(self, value: int) -> None:
        try:
            self._properties.set(self.counter_key, str(value))
        except PropertyStoreError as e:
            logger.warning("Circuit error counter write failed", circuit=self.name, error=str(e))

    def _increment_counter(self, fallback: int) -> int:
        try:
            return self._properties.increment(self.counter_key)
        except PropertyStoreError as e:
            logger.warning("Circuit error counter increment failed", circuit=self.name, error=str(e))
            return fallback

    # === Public API ===

    def state(self) -> CircuitState:
        """Read the shared state. Unreadable state counts as closed."""
        window = self._read_window()
        if window is None:
            return CircuitState()
        return CircuitState(
            consecutive_errors=self._read_counter(window.consecutive_errors),
            open_until_ms=window.open_until_ms,
        )

    def is_open(self) -> bool:
        return self.state().is_open(now_ms(self._clock))

    def open_remaining_ms(self) -> int:
        """Milliseconds until the circuit closes (0 when closed)."""
        return max(0, self.state().open_until_ms - now_ms(self._clock))

    def ensure_closed(self) -> None:
        """Raise CircuitOpen if the circuit is currently open."""
        current = now_ms(self._clock)
        state = self.state()
        if state.is_open(current):
            raise CircuitOpen(self.name, state.open_until_ms, current)

    def record_rate_limited(self) -> CircuitState:
        """Count one rate-limit response, opening the circuit at the threshold."""
        with self._lock:
            window = self._read_window()
            if window is None:
                # Counts from an expired window do not carry over
                self._set_counter(0)
                window = CircuitState()
            errors = self._increment_counter(window.consecutive_errors + 1)
            open_until = window.open_until_ms
            if errors >= self.failure_threshold:
                open_until = now_ms(self._clock) + self.cool_down_ms
                logger.warning(
                    "Circuit opened after consecutive rate limits",
                    circuit=self.name,
                    consecutive_errors=errors,
                    cool_down_ms=self.cool_down_ms,
                )
            new_state = CircuitState(consecutive_errors=errors, open_until_ms=open_until)
            self._write_window(new_state)
            return new_state

    def record_success(self) -> None:
        """Reset the circuit after a 2xx response."""
        with self._lock:
            if self.state().is_clean:
                return
            logger.info("Circuit closed after successful call", circuit=self.name)
            self._set_counter(0)
            self._write_window(CircuitState())

    def reset(self) -> None:
        """Force the circuit closed (operator action)."""
        with self._lock:
            self._set_counter(0)
            try:
                self._backend.remove(self.key)
            except CacheBackendError as e:
                logger.warning("Circuit reset failed, writing closed state instead", circuit=self.name, error=str(e))
                self._write_window(CircuitState())
