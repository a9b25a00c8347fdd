"""Client-side pacing of calls to the remote table.

Uses pyrate-limiter, optionally persisted to SQLite for cross-process pacing.
"""

from tabula.core.rate_limit.limiter import NoOpPacer, RequestPacer, build_pacer

__all__ = ["NoOpPacer", "RequestPacer", "build_pacer"]
