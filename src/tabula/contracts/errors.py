# src/tabula/contracts/errors.py
"""Error taxonomy for the data-access layer.

Every error a caller can see derives from TabulaError and carries two
classification attributes:

- failure_class: how the UI layer should present it (busy, gone, conflict,
  generic failure)
- retryable: whether retrying the same logical operation later can succeed

Substrate and transport exceptions at the bottom of this module are internal
signals. The layer catches them and either falls through (cache, properties),
logs them (lock release) or converts them (transport -> UpstreamError).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

import structlog

logger = structlog.get_logger(__name__)


class FailureClass(StrEnum):
    """User-facing classification of a failure."""

    BUSY = "busy"
    GONE = "gone"
    CONFLICT = "conflict"
    FAILURE = "failure"


USER_MESSAGES: dict[FailureClass, str] = {
    FailureClass.BUSY: "The system is busy. Please retry shortly.",
    FailureClass.GONE: "The record no longer exists.",
    FailureClass.CONFLICT: "The record was changed by someone else. Reload and retry.",
    FailureClass.FAILURE: "Something went wrong. Please try again later.",
}


class TabulaError(Exception):
    """Base class for errors surfaced by the data-access layer."""

    failure_class: FailureClass = FailureClass.FAILURE
    retryable: bool = False


class QuotaExceeded(TabulaError):
    """Raised when rate-limit retries are exhausted.

    Attributes:
        attempts: Total attempts made (including the first)
        status_code: Last rate-limit status code received
    """

    failure_class = FailureClass.BUSY
    retryable = True

    def __init__(self, operation: str, attempts: int, status_code: int) -> None:
        self.operation = operation
        self.attempts = attempts
        self.status_code = status_code
        super().__init__(f"{operation}: quota exceeded after {attempts} attempts (last status {status_code})")


class CircuitOpen(TabulaError):
    """Raised without a network call while the circuit breaker is open."""

    failure_class = FailureClass.BUSY
    retryable = True

    def __init__(self, name: str, open_until_ms: int, now_ms: int) -> None:
        self.name = name
        self.open_until_ms = open_until_ms
        self.retry_after_seconds = max(0.0, (open_until_ms - now_ms) / 1000)
        super().__init__(f"Circuit {name!r} open: calls paused for {self.retry_after_seconds:.0f}s to let quota recover")


class LockTimeout(TabulaError):
    """Raised when a named lock cannot be acquired within the wait bound."""

    failure_class = FailureClass.BUSY
    retryable = True

    def __init__(self, name: str, waited_ms: int) -> None:
        self.name = name
        self.waited_ms = waited_ms
        super().__init__(f"Lock {name!r} not acquired within {waited_ms}ms")


class LockLost(LockTimeout):
    """Raised before a write when the lock's lease lapsed and another holder may have entered.

    Nothing was written; the caller may retry the whole transaction.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.waited_ms = 0
        TabulaError.__init__(self, f"Lock {name!r} lease lapsed before the write; nothing was written")


class RecordNotFound(TabulaError):
    """Raised when an update or admin target does not exist."""

    failure_class = FailureClass.GONE

    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"Record not found: {record_id}")


class UpstreamError(TabulaError):
    """Non-retryable failure reported by the remote table.

    The upstream detail is preserved for diagnostics and must never be shown
    to end users (see describe_failure).
    """

    def __init__(self, operation: str, status_code: int | None, detail: str) -> None:
        self.operation = operation
        self.status_code = status_code
        self.detail = detail
        status = status_code if status_code is not None else "transport"
        super().__init__(f"{operation} failed ({status}): {detail}")


class StaleCommitConflict(TabulaError):
    """Raised when a record's lastModified moved since the context snapshot."""

    failure_class = FailureClass.CONFLICT
    retryable = True

    def __init__(self, record_id: str, expected: datetime | None, actual: datetime | None) -> None:
        self.record_id = record_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"Record {record_id} changed since snapshot (expected lastModified={expected}, found {actual})")


class ContextStateError(TabulaError):
    """Raised when a committed or discarded context is used again."""


class OwnerKeyConflict(TabulaError):
    """Raised when an owner key is already held by another record."""

    failure_class = FailureClass.CONFLICT

    def __init__(self, owner_key: str, existing_id: str) -> None:
        self.owner_key = owner_key
        self.existing_id = existing_id
        super().__init__(f"Owner key {owner_key!r} already belongs to record {existing_id}")


class SchemaMismatch(TabulaError):
    """Raised when the remote table header does not match the record schema."""

    def __init__(self, expected: list[str], actual: list[str]) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Table header mismatch: expected {expected}, found {actual}")


# =============================================================================
# Internal signals
# =============================================================================


class TransportFailure(Exception):
    """Network-level failure talking to the remote table (no HTTP status)."""


class SubstrateError(Exception):
    """Base class for failures of the shared substrate."""


class CacheBackendError(SubstrateError):
    """Shared cache read or write failed."""


class PropertyStoreError(SubstrateError):
    """Property store read or write failed."""


class LockServiceError(SubstrateError):
    """Lock service acquire or release failed."""


# =============================================================================
# User-facing mapping
# =============================================================================


@dataclass(frozen=True, slots=True)
class UserFacingError:
    """What the UI layer may show for a failure.

    Attributes:
        failure_class: Presentation class
        message: Safe, generic message
        correlation_id: Identifier logged server-side with full detail
        retryable: Whether a later retry may succeed
    """

    failure_class: FailureClass
    message: str
    correlation_id: str
    retryable: bool


def describe_failure(exc: BaseException) -> UserFacingError:
    """Map an exception to a user-facing description.

    Full detail (including upstream responses) is logged under a fresh
    correlation id; only the generic message leaves the server.
    """
    correlation_id = uuid.uuid4().hex[:12]
    if isinstance(exc, TabulaError):
        failure_class = exc.failure_class
        retryable = exc.retryable
    else:
        failure_class = FailureClass.FAILURE
        retryable = False

    logger.warning(
        "Data-access failure",
        correlation_id=correlation_id,
        failure_class=failure_class.value,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return UserFacingError(
        failure_class=failure_class,
        message=USER_MESSAGES[failure_class],
        correlation_id=correlation_id,
        retryable=retryable,
    )
