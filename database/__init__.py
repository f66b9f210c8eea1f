"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = await create_store(DatabaseConfig(store_backend="memory"))
  lead = await store.get_lead("l1")
"""
from database.store_base import BaseFollowUpStore, check_task_update
from database.store_memory import InMemoryFollowUpStore
from database.store_factory import create_store

__all__ = [
    # Store interface
    "BaseFollowUpStore", "check_task_update",
    # Store backends
    "InMemoryFollowUpStore",
    # Factory
    "create_store",
]
