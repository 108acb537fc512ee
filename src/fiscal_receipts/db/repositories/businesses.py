from __future__ import annotations

from sqlalchemy import select

from fiscal_receipts.db.models import Business
from fiscal_receipts.db.repositories.base import BaseRepository
from fiscal_receipts.utils.errors import NotFoundError


class BusinessRepository(BaseRepository):
    def create(
        self,
        *,
        owner_id: str,
        business_name: str | None = None,
        vat_number: str | None = None,
        fiscal_code: str | None = None,
    ) -> Business:
        business = Business(
            owner_id=owner_id,
            business_name=business_name,
            vat_number=vat_number,
            fiscal_code=fiscal_code,
        )
        self.session.add(business)
        self.session.flush()
        return business

    def get(self, business_id: int) -> Business:
        business = self.session.get(Business, business_id)
        if not business:
            raise NotFoundError(f"Business {business_id} not found")
        return business

    def is_owned_by(self, business_id: int, owner_id: str) -> bool:
        """True only when the business exists and belongs to `owner_id`."""
        stmt = select(Business.id).where(Business.id == business_id).where(Business.owner_id == owner_id)
        return self.session.scalars(stmt).first() is not None

    def list_by_owner(self, owner_id: str) -> list[Business]:
        stmt = select(Business).where(Business.owner_id == owner_id).order_by(Business.id.asc())
        return list(self.session.scalars(stmt).all())

    def delete(self, business_id: int) -> None:
        """Removes the business; credentials and documents go with it (ON DELETE CASCADE)."""
        business = self.get(business_id)
        self.session.delete(business)
        self.session.flush()
