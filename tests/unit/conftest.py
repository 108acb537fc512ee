from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from fiscal_receipts.db.models import SCHEMA, Base
from fiscal_receipts.db.repositories.businesses import BusinessRepository
from fiscal_receipts.db.repositories.credentials import PortalCredentialRepository
from fiscal_receipts.security.cipher import KeyRing, encrypt_with
from fiscal_receipts.testing.fakes import OWNER_ID, PASSWORD, PIN, TAX_CODE


@pytest.fixture()
def engine():
    # Models live in the Postgres schema "fiscal_receipts".
    # SQLite has no schemas, so we translate that schema to None.
    schema_map = {SCHEMA: None}

    eng = create_engine("sqlite+pysqlite:///:memory:")

    # Apply schema translation for all operations using this engine
    eng = eng.execution_options(schema_translate_map=schema_map)

    return eng


@pytest.fixture()
def session(engine):
    # Create all tables in SQLite, with schema translated away
    Base.metadata.create_all(bind=engine)

    SessionLocal = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def key_ring() -> KeyRing:
    return KeyRing(active_version=1, keys={1: bytes(range(32))})


@pytest.fixture()
def business(session):
    return BusinessRepository(session).create(
        owner_id=OWNER_ID,
        business_name="Bar Rossi",
        vat_number="01234567890",
        fiscal_code=TAX_CODE,
    )


@pytest.fixture()
def credentials(session, business, key_ring):
    """Stored, verified portal credentials for `business`."""
    repo = PortalCredentialRepository(session)
    record = repo.upsert(
        business_id=business.id,
        encrypted_tax_code=encrypt_with(key_ring, TAX_CODE),
        encrypted_password=encrypt_with(key_ring, PASSWORD),
        encrypted_pin=encrypt_with(key_ring, PIN),
        key_version=key_ring.active_version,
    )
    return repo.mark_verified(record)
