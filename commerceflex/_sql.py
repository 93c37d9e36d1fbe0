"""
Dialect helpers shared by every SQLAlchemy-backed store.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite


def insert_for(dialect: str) -> Any:
    """
    ``insert`` construct supporting ``on_conflict_do_nothing/update``.

    Only SQLite and PostgreSQL provide the ON CONFLICT clause used for
    compare-and-swap claims and idempotent upserts.
    """
    match dialect:
        case "sqlite":
            return sqlite.insert
        case "postgresql":
            return postgresql.insert
        case _:
            raise ValueError(f"Unsupported dialect for conflict-aware inserts: {dialect}")


__all__ = ("insert_for",)
