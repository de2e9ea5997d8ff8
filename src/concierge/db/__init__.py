"""Persistence layer: storage protocol, in-memory and SQL implementations."""

from concierge.db.store import AutomationStore, MemoryStore

__all__ = ["AutomationStore", "MemoryStore"]
