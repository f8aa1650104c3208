"""Persistence contract and reference backends.

The orchestrator and pipeline only depend on ``SessionStore``; the
in-memory and SQLite backends implement it.
"""

from termrelay.storage.base import SessionStore
from termrelay.storage.memory import InMemorySessionStore
from termrelay.storage.sqlite import SQLiteSessionStore

__all__ = ["InMemorySessionStore", "SQLiteSessionStore", "SessionStore"]
