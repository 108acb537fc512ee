from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _dialect_insert(self, model):
        """
        Returns a dialect-specific INSERT for `model` that supports ON CONFLICT DO NOTHING.

        PostgreSQL in production, SQLite in tests; anything else is refused rather than
        silently losing insert-if-absent semantics.
        """
        name = self.session.get_bind().dialect.name
        if name == "postgresql":
            return postgresql.insert(model)
        if name == "sqlite":
            return sqlite.insert(model)
        raise NotImplementedError(f"insert-if-absent is not supported on dialect '{name}'")
