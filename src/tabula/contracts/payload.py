# src/tabula/contracts/payload.py
"""Versioned payload model.

The payload column holds a JSON object. Rather than probing for properties at
runtime, reads go through parse_payload():

1. Decode JSON. Invalid JSON or a non-object is logged and replaced by the
   model defaults.
2. Migrate: apply PAYLOAD_MIGRATIONS step by step from the stored
   schema_version to PAYLOAD_SCHEMA_VERSION.
3. Validate against the payload model. Applications subclass RecordPayload to
   declare typed fields with defaults; unknown keys are kept (extra="allow").

A validation failure keeps the migrated object as-is (logged), so a later
write never drops data the current model does not understand.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError

logger = structlog.get_logger(__name__)

PAYLOAD_SCHEMA_VERSION = 1

PayloadMigration = Callable[[dict[str, Any]], dict[str, Any]]


class RecordPayload(BaseModel):
    """Base payload model. Subclass to add typed, defaulted fields."""

    model_config = ConfigDict(extra="allow")

    schema_version: int = PAYLOAD_SCHEMA_VERSION


def _stamp_v1(payload: dict[str, Any]) -> dict[str, Any]:
    # Unversioned payloads predate the schema_version field; content is unchanged.
    return {**payload, "schema_version": 1}


# Maps "from version" to the step producing "from version + 1".
PAYLOAD_MIGRATIONS: dict[int, PayloadMigration] = {
    0: _stamp_v1,
}


def migrate_payload(
    payload: Mapping[str, Any],
    *,
    migrations: Mapping[int, PayloadMigration] | None = None,
    target_version: int = PAYLOAD_SCHEMA_VERSION,
) -> dict[str, Any]:
    """Run migrations from the payload's schema_version up to target_version.

    Payloads written by a newer version are returned untouched.

    Raises:
        ValueError: If a migration step is missing, or a step does not
            advance schema_version
    """
    steps = PAYLOAD_MIGRATIONS if migrations is None else migrations
    current = dict(payload)
    version = current.get("schema_version", 0)
    if not isinstance(version, int) or version < 0:
        raise ValueError(f"Invalid payload schema_version: {version!r}")

    while version < target_version:
        if version not in steps:
            raise ValueError(f"No payload migration registered from schema_version {version}")
        current = steps[version](current)
        new_version = current.get("schema_version")
        if new_version != version + 1:
            raise ValueError(f"Payload migration from {version} produced schema_version {new_version!r}")
        version = new_version
    return current


def default_payload(model: type[RecordPayload] = RecordPayload) -> dict[str, Any]:
    return model().model_dump(mode="json")


def parse_payload(
    raw: str | Mapping[str, Any] | None,
    *,
    model: type[RecordPayload] = RecordPayload,
    record_id: str | None = None,
) -> dict[str, Any]:
    """Decode, migrate and validate a stored payload.

    Args:
        raw: Cell content (JSON text) or an already decoded mapping
        model: Payload model to validate against
        record_id: Used for log context only

    Returns:
        Plain dict suitable for Record.payload
    """
    if raw is None or raw == "":
        return default_payload(model)

    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Payload is not valid JSON, using defaults", record_id=record_id, error=str(e), length=len(raw))
            return default_payload(model)
    else:
        decoded = raw

    if not isinstance(decoded, Mapping):
        logger.warning("Payload is not a JSON object, using defaults", record_id=record_id, payload_type=type(decoded).__name__)
        return default_payload(model)

    try:
        migrated = migrate_payload(decoded)
    except ValueError as e:
        logger.warning("Payload migration failed, keeping stored payload", record_id=record_id, error=str(e))
        return dict(decoded)

    try:
        return model.model_validate(migrated).model_dump(mode="json")
    except ValidationError as e:
        logger.warning(
            "Payload failed model validation, keeping migrated payload",
            record_id=record_id,
            model=model.__name__,
            errors=e.error_count(),
        )
        return migrated


def encode_payload(payload: Mapping[str, Any]) -> str:
    """Serialize a payload for the payload cell (compact, UTF-8 preserved)."""
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), sort_keys=True)
