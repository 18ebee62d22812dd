"""Storage package providing persistence for users, positions and rebalancing records."""

from .sqlite_repository import SQLiteRepository

__all__ = ["SQLiteRepository"]
