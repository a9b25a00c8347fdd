# src/tabula/engine/access.py
"""DataAccess: the surface business logic calls.

Composes the lower layers into the request flow:

    lock record:<id> -> ExecutionContext snapshot -> caller mutates
      -> commit (one write, cache bumped and re-warmed) -> unlock

Creation runs under create:<owner_key> so concurrent first requests for the
same owner produce one row.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from types import TracebackType
from typing import Any, TypeVar

import structlog

from tabula.cache import NamespaceVersions, VersionedCache
from tabula.contracts.errors import OwnerKeyConflict, RecordNotFound
from tabula.contracts.payload import RecordPayload
from tabula.contracts.protocols import TableTransport
from tabula.contracts.records import Record
from tabula.core.clock import Clock
from tabula.core.config import TabulaSettings
from tabula.core.rate_limit import build_pacer
from tabula.engine.context import ExecutionContext, VerifyMode
from tabula.locks import LockCoordinator
from tabula.resilience import BackoffClient, CircuitBreaker, RetryPolicy
from tabula.store import HttpTableTransport, RecordStore, TableLayout
from tabula.substrate import Substrate, build_substrate

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class DataAccess:
    """Record reads, transactions and admin operations.

    Example:
        with DataAccess.from_settings(load_settings(path)) as access:
            record, created = access.create_record_if_absent("a@example.com")
            access.with_record_transaction(record.id, lambda ctx: ctx.set_payload_value("n", 1))
    """

    def __init__(self, store: RecordStore, locks: LockCoordinator, *, substrate: Substrate | None = None) -> None:
        self._store = store
        self._locks = locks
        self._substrate = substrate

    @classmethod
    def from_settings(
        cls,
        settings: TabulaSettings,
        transport: TableTransport | None = None,
        *,
        payload_model: type[RecordPayload] = RecordPayload,
        clock: Clock | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> DataAccess:
        """Wire every component from settings.

        Args:
            settings: Validated settings
            transport: Table transport (defaults to HttpTableTransport from settings.table)
            payload_model: Payload model records are validated against
            clock: Clock override for tests
            sleep: Backoff sleep override for tests
        """
        substrate = build_substrate(settings.substrate, settings.locks, clock=clock)
        table_transport = transport or HttpTableTransport.from_settings(settings.table)
        return cls.assemble(
            settings,
            table_transport,
            substrate,
            payload_model=payload_model,
            clock=clock,
            sleep=sleep,
            owns_substrate=True,
        )

    @classmethod
    def assemble(
        cls,
        settings: TabulaSettings,
        table_transport: TableTransport,
        substrate: Substrate,
        *,
        payload_model: type[RecordPayload] = RecordPayload,
        clock: Clock | None = None,
        sleep: Callable[[float], None] = time.sleep,
        owns_substrate: bool = False,
    ) -> DataAccess:
        """Wire components around an existing transport and substrate.

        Several DataAccess instances assembled on one substrate behave like
        separate processes sharing a deployment. close() releases the
        substrate only when owns_substrate is set.
        """
        breaker = CircuitBreaker.from_settings(substrate.cache, substrate.properties, settings.circuit, clock=clock)
        client = BackoffClient(
            table_transport,
            breaker,
            RetryPolicy.from_settings(settings.backoff),
            pacer=build_pacer(settings.rate_limit),
            retry_transport_errors=settings.backoff.retry_transport_errors,
            sleep=sleep,
        )
        cache = VersionedCache.from_settings(substrate.cache, NamespaceVersions(substrate.properties), settings.cache, clock=clock)
        store = RecordStore(
            client,
            cache,
            layout=TableLayout(settings.table.sheet_name),
            listing_ttl=settings.cache.listing_ttl_seconds,
            payload_model=payload_model,
            clock=clock,
        )
        logger.debug("Data access configured", substrate=settings.substrate.backend, sheet=settings.table.sheet_name)
        return cls(store, LockCoordinator(substrate.locks, settings.locks), substrate=substrate if owns_substrate else None)

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def locks(self) -> LockCoordinator:
        return self._locks

    @property
    def breaker(self) -> CircuitBreaker:
        return self._store.client.breaker

    # === Reads ===

    def read_record(self, record_id: str) -> Record | None:
        stored = self._store.get(record_id)
        return stored.record if stored is not None else None

    def require_record(self, record_id: str) -> Record:
        """Like read_record, but raises RecordNotFound instead of returning None."""
        record = self.read_record(record_id)
        if record is None:
            raise RecordNotFound(record_id)
        return record

    def find_by_owner_key(self, owner_key: str) -> Record | None:
        stored = self._store.find_by_owner_key(owner_key)
        return stored.record if stored is not None else None

    def find_by_payload_field(self, field: str, value: Any) -> Record | None:
        stored = self._store.find_by_payload_field(field, value)
        return stored.record if stored is not None else None

    def list_records(self, *, active_only: bool = False) -> list[Record]:
        return [stored.record for stored in self._store.list_records(active_only=active_only)]

    # === Transactions ===

    @contextmanager
    def transaction(self, record_id: str, *, verify: VerifyMode = "cached") -> Iterator[ExecutionContext]:
        """Lock the record, yield a context, commit on normal exit.

        An exception inside the block skips the commit. Calling ctx.discard()
        (or ctx.commit()) inside the block also skips the automatic commit.

        Raises:
            LockTimeout: If the record lock is not acquired in time
            LockLost: If the lock lease was taken over before the write
            RecordNotFound: If the record does not exist
        """
        with self._locks.hold_record(record_id) as held:
            ctx = ExecutionContext.open(self._store, record_id, guard=held.confirm)
            yield ctx
            if not ctx.state.is_closed:
                ctx.commit(verify=verify)

    def with_record_transaction(
        self,
        record_id: str,
        fn: Callable[[ExecutionContext], T],
        *,
        verify: VerifyMode = "cached",
    ) -> T:
        """Run fn inside transaction(record_id) and return its result."""
        with self.transaction(record_id, verify=verify) as ctx:
            return fn(ctx)

    # === Creation and admin ===

    def create_record_if_absent(self, owner_key: str, initial_payload: dict[str, Any] | None = None) -> tuple[Record, bool]:
        """Return the owner's record, creating it if needed.

        Returns:
            (record, created)
        """
        if not owner_key:
            raise ValueError("owner_key must not be empty")
        with self._locks.hold_creation(owner_key):
            stored, created = self._store.append(owner_key, initial_payload)
        return stored.record, created

    def delete_record(self, record_id: str) -> bool:
        """Blank the record's row (admin)."""
        with self._locks.hold_record(record_id):
            return self._store.delete(record_id)

    def reassign_owner_key(self, record_id: str, new_owner_key: str) -> Record:
        """Move a record to a new owner key (admin).

        Raises:
            OwnerKeyConflict: If another record already holds new_owner_key
            RecordNotFound: If the record does not exist
        """
        with self._locks.hold_creation(new_owner_key):
            holder = self._store.find_by_owner_key(new_owner_key)
            if holder is not None and holder.id != record_id:
                raise OwnerKeyConflict(new_owner_key, holder.id)
            with self.transaction(record_id) as ctx:
                ctx.set_owner_key(new_owner_key)
            return ctx.record

    def invalidate_all(self, namespace: str = "records") -> int:
        """Drop every cached entry of a namespace, in every process. Returns the new version."""
        version = self._store.cache.bump(namespace)
        logger.info("Cache namespace invalidated", namespace=namespace, version=version)
        return version

    # === Lifecycle ===

    def close(self) -> None:
        self._store.client.close()
        if self._substrate is not None:
            self._substrate.close()

    def __enter__(self) -> DataAccess:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
