"""State store: canonical records and their persistence backends."""

from beeylo_sync.store.base import StateStore
from beeylo_sync.store.memory import MemoryStore

__all__ = ["MemoryStore", "StateStore", "build_store"]


def build_store(database_url: str) -> StateStore:
    """Postgres when a URL is configured, otherwise in-memory."""
    if database_url:
        from beeylo_sync.store.postgres import PostgresStore

        return PostgresStore(database_url)
    return MemoryStore()
