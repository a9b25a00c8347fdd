"""
Tabula: a resilient data-access layer over a rate-limited remote table.

Makes a non-transactional, quota-limited spreadsheet-style table behave like a
small transactional key-value store: backoff with circuit breaking, a
two-tier versioned cache, batched single-write commits and distributed locks.
"""

__version__ = "0.4.0"
