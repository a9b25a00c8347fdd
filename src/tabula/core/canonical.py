# src/tabula/core/canonical.py
"""
Canonical JSON serialization for deterministic cache keys.

Lookups keyed by arbitrary values (payload field lookups, listing filters)
need a key that is identical in every process. canonical_json() produces
RFC 8785 (JCS) output via the rfc8785 package, so dict ordering, whitespace
and float formatting never change the key.

NaN and Infinity are rejected rather than silently converted.
"""

from __future__ import annotations

import hashlib
import math
from datetime import datetime
from typing import Any

import rfc8785


def _normalize(obj: Any) -> Any:
    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            raise ValueError(f"Cannot canonicalize non-finite float: {obj}")
        return obj
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {str(k): _normalize(v) for k, v in obj.items()}
    if isinstance(obj, list | tuple | set | frozenset):
        items = [_normalize(v) for v in obj]
        return sorted(items, key=repr) if isinstance(obj, set | frozenset) else items
    return obj


def canonical_json(obj: Any) -> str:
    """Serialize to canonical JSON text.

    Raises:
        ValueError: If obj contains NaN or Infinity
        TypeError: If obj contains a type JSON cannot represent
    """
    return rfc8785.dumps(_normalize(obj)).decode("utf-8")


def stable_hash(obj: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form."""
    return hashlib.sha256(canonical_json(obj).encode("utf-8")).hexdigest()
