from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from fiscal_receipts.config.settings import require_database_url
from fiscal_receipts.db.models import SCHEMA, Base

_ENGINE: Engine | None = None
SessionLocal: sessionmaker[Session] | None = None


def configure_engine(url: str | None = None) -> Engine:
    """
    What it does:
    - Builds the process-wide engine and session factory (from DATABASE_URL unless `url` is given).

    Behavior:
    - SQLite has no schemas: the "fiscal_receipts" schema is translated away for sqlite URLs.
    - Replaces any previously configured engine.
    """
    global _ENGINE, SessionLocal
    url = url or require_database_url()

    engine = create_engine(url, pool_pre_ping=True)
    if engine.dialect.name == "sqlite":
        engine = engine.execution_options(schema_translate_map={SCHEMA: None})

    _ENGINE = engine
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    return engine


def get_engine() -> Engine:
    if _ENGINE is None:
        return configure_engine()
    return _ENGINE


def init_schema() -> None:
    """Creates missing tables; the production schema itself is expected to exist on PostgreSQL."""
    Base.metadata.create_all(bind=get_engine())


@contextmanager
def get_session() -> Iterator[Session]:
    if SessionLocal is None:
        get_engine()

    assert SessionLocal is not None  # for type checkers
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
