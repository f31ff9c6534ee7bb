"""Persistence adapters."""

from .sqlite import SqliteMemoryStore

__all__ = ["SqliteMemoryStore"]
