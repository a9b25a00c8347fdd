# src/tabula/substrate/schema.py
"""SQLAlchemy table definitions for the shared substrate.

Uses SQLAlchemy Core (not ORM) so the same statements run on SQLite and
PostgreSQL. Expiry columns hold epoch seconds (float) taken from the
caller's clock, so every process compares against the same scale.
"""

from sqlalchemy import Column, Float, Index, LargeBinary, MetaData, String, Table, Text

metadata = MetaData()

# === Property store (namespace version counters) ===

properties_table = Table(
    "properties",
    metadata,
    Column("key", String(255), primary_key=True),
    Column("value", Text, nullable=False),
    Column("updated_at", Float, nullable=False),
)

# === Tier-2 cache ===

cache_entries_table = Table(
    "cache_entries",
    metadata,
    Column("key", String(512), primary_key=True),
    Column("value", LargeBinary, nullable=False),
    Column("expires_at", Float, nullable=False),
)

Index("ix_cache_entries_expires_at", cache_entries_table.c.expires_at)

# === Named locks ===

locks_table = Table(
    "locks",
    metadata,
    Column("name", String(255), primary_key=True),
    # host:pid:thread:instance of the holder
    Column("owner", String(255), nullable=False),
    # Lease end; an expired row may be taken over by any waiter
    Column("expires_at", Float, nullable=False),
)
