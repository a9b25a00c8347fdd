"""Shared contracts for cross-boundary data types.

Records, table requests/responses, collaborator protocols, the payload model
and the error taxonomy are defined here so every subsystem imports them from
one place.
"""

from tabula.contracts.errors import (
    CacheBackendError,
    CircuitOpen,
    ContextStateError,
    FailureClass,
    LockServiceError,
    LockLost,
    LockTimeout,
    OwnerKeyConflict,
    PropertyStoreError,
    QuotaExceeded,
    RecordNotFound,
    SchemaMismatch,
    StaleCommitConflict,
    SubstrateError,
    TabulaError,
    TransportFailure,
    UpstreamError,
    UserFacingError,
    describe_failure,
)
from tabula.contracts.payload import (
    PAYLOAD_SCHEMA_VERSION,
    RecordPayload,
    encode_payload,
    migrate_payload,
    parse_payload,
)
from tabula.contracts.protocols import CacheBackend, LockService, PropertyStore, TableTransport
from tabula.contracts.records import COLUMNS, HEADER, MUTABLE_COLUMNS, Record, RecordColumn, StoredRecord
from tabula.contracts.table import TableOperation, TableRequest, TableResponse

__all__ = [
    "COLUMNS",
    "HEADER",
    "MUTABLE_COLUMNS",
    "PAYLOAD_SCHEMA_VERSION",
    "CacheBackend",
    "CacheBackendError",
    "CircuitOpen",
    "ContextStateError",
    "FailureClass",
    "LockService",
    "LockServiceError",
    "LockLost",
    "LockTimeout",
    "OwnerKeyConflict",
    "PropertyStore",
    "PropertyStoreError",
    "QuotaExceeded",
    "Record",
    "RecordColumn",
    "RecordNotFound",
    "RecordPayload",
    "SchemaMismatch",
    "StaleCommitConflict",
    "StoredRecord",
    "SubstrateError",
    "TableOperation",
    "TableRequest",
    "TableResponse",
    "TableTransport",
    "TabulaError",
    "TransportFailure",
    "UpstreamError",
    "UserFacingError",
    "describe_failure",
    "encode_payload",
    "migrate_payload",
    "parse_payload",
]
