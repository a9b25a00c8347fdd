# src/tabula/engine/__init__.py
"""Transaction engine: execution contexts and the DataAccess facade.

- ExecutionContext: accumulate changes to one record, commit in one write
- DataAccess: lock + context + commit flows exposed to business logic
"""

from tabula.engine.access import DataAccess
from tabula.engine.context import CommitResult, ContextState, ContextStats, ExecutionContext

__all__ = ["CommitResult", "ContextState", "ContextStats", "DataAccess", "ExecutionContext"]
