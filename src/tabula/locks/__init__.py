# src/tabula/locks/__init__.py
"""Distributed mutual exclusion for record writers."""

from tabula.locks.coordinator import HeldLock, LockCoordinator, creation_lock_name, record_lock_name

__all__ = ["HeldLock", "LockCoordinator", "creation_lock_name", "record_lock_name"]
