from __future__ import annotations

from sqlalchemy import select

from fiscal_receipts.db.models import PortalCredentialRecord
from fiscal_receipts.db.repositories.base import BaseRepository, utcnow


class PortalCredentialRepository(BaseRepository):
    def get_by_business(self, business_id: int) -> PortalCredentialRecord | None:
        stmt = select(PortalCredentialRecord).where(PortalCredentialRecord.business_id == business_id)
        return self.session.scalars(stmt).first()

    def upsert(
        self,
        *,
        business_id: int,
        encrypted_tax_code: str,
        encrypted_password: str,
        encrypted_pin: str,
        key_version: int,
    ) -> PortalCredentialRecord:
        """
        What it does:
        - Stores the single credential record of a business (insert or replace).

        Behavior:
        - Any save resets verified_at: new credentials are unverified until a test login succeeds.
        """
        record = self.get_by_business(business_id)
        if record is None:
            record = PortalCredentialRecord(business_id=business_id)
            self.session.add(record)

        record.encrypted_tax_code = encrypted_tax_code
        record.encrypted_password = encrypted_password
        record.encrypted_pin = encrypted_pin
        record.key_version = key_version
        record.verified_at = None
        record.updated_at = utcnow()

        self.session.flush()
        return record

    def mark_verified(self, record: PortalCredentialRecord) -> PortalCredentialRecord:
        record.verified_at = utcnow()
        record.updated_at = record.verified_at
        self.session.flush()
        return record

    def replace_envelopes(
        self,
        record: PortalCredentialRecord,
        *,
        encrypted_tax_code: str,
        encrypted_password: str,
        encrypted_pin: str,
        key_version: int,
    ) -> PortalCredentialRecord:
        """Re-encryption under another key: same secrets, so verified_at is kept."""
        record.encrypted_tax_code = encrypted_tax_code
        record.encrypted_password = encrypted_password
        record.encrypted_pin = encrypted_pin
        record.key_version = key_version
        record.updated_at = utcnow()
        self.session.flush()
        return record

    def list_not_on_version(self, key_version: int) -> list[PortalCredentialRecord]:
        stmt = (
            select(PortalCredentialRecord)
            .where(PortalCredentialRecord.key_version != key_version)
            .order_by(PortalCredentialRecord.id.asc())
        )
        return list(self.session.scalars(stmt).all())
