# src/tabula/locks/coordinator.py
"""Named distributed mutex with a bounded wait.

Lock names:
- ``record:<id>``: one record's read-modify-write (record_wait_ms)
- ``create:<owner_key>``: multi-step creation flows (creation_wait_ms)

Release runs on every exit path. A failed release is logged, never raised:
the protected work already happened, and the lease frees the lock anyway.

A lease can lapse while its holder is still working (a commit sleeping
through backoff). Holders therefore call HeldLock.confirm() right before
they write: it restarts the lease, or raises LockLost when someone else
took the lock in the meantime.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from typing import TypeVar

import structlog

from tabula.contracts.errors import LockLost, LockServiceError, LockTimeout
from tabula.contracts.protocols import LockService
from tabula.core.config import LockSettings

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def record_lock_name(record_id: str) -> str:
    return f"record:{record_id}"


def creation_lock_name(owner_key: str) -> str:
    return f"create:{owner_key}"


class HeldLock:
    """Handle for a lock held inside LockCoordinator.hold()."""

    def __init__(self, service: LockService, name: str) -> None:
        self._service = service
        self.name = name

    def confirm(self) -> None:
        """Restart the lease before a write.

        Raises:
            LockLost: If the lease lapsed and another holder took the lock,
                or the lock service cannot tell
        """
        try:
            still_held = self._service.renew(self.name)
        except LockServiceError as e:
            logger.error("Lock renewal failed", lock=self.name, error=str(e))
            raise LockLost(self.name) from e
        if not still_held:
            logger.error("Lock lease lapsed and was taken over", lock=self.name)
            raise LockLost(self.name)


class LockCoordinator:
    """Acquire/release discipline over a LockService."""

    def __init__(self, service: LockService, settings: LockSettings | None = None) -> None:
        self._service = service
        self.settings = settings or LockSettings()

    @contextmanager
    def hold(self, name: str, max_wait_ms: int) -> Iterator[HeldLock]:
        """Hold ``name`` for the duration of the block.

        Raises:
            LockTimeout: If the lock is not acquired within max_wait_ms
            LockServiceError: If the lock service fails while acquiring
        """
        started = time.monotonic()
        acquired = self._service.try_acquire(name, max_wait_ms)
        waited_ms = int((time.monotonic() - started) * 1000)
        if not acquired:
            logger.warning("Lock wait timed out", lock=name, waited_ms=waited_ms, max_wait_ms=max_wait_ms)
            raise LockTimeout(name, waited_ms)
        logger.debug("Lock acquired", lock=name, waited_ms=waited_ms)
        try:
            yield HeldLock(self._service, name)
        finally:
            try:
                self._service.release(name)
            except LockServiceError as e:
                logger.error("Lock release failed", lock=name, error=str(e))

    def with_lock(self, name: str, max_wait_ms: int, fn: Callable[[], T]) -> T:
        """Run fn while holding ``name``."""
        with self.hold(name, max_wait_ms):
            return fn()

    def hold_record(self, record_id: str) -> AbstractContextManager[HeldLock]:
        return self.hold(record_lock_name(record_id), self.settings.record_wait_ms)

    def hold_creation(self, owner_key: str) -> AbstractContextManager[HeldLock]:
        return self.hold(creation_lock_name(owner_key), self.settings.creation_wait_ms)
