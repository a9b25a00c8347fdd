# src/tabula/core/__init__.py
"""Core infrastructure: configuration, logging, canonical hashing, pacing."""
