from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from fiscal_receipts.db.enums import DocumentStatus
from fiscal_receipts.db.models import CommercialDocument
from fiscal_receipts.db.repositories.businesses import BusinessRepository
from fiscal_receipts.db.repositories.documents import CommercialDocumentRepository
from fiscal_receipts.services.payload_mapper import to_amount
from fiscal_receipts.utils.errors import NotFoundError


@dataclass(frozen=True)
class ReceiptLineItem:
    description: str
    quantity: str
    gross_unit_price: str
    vat_code: str


@dataclass(frozen=True)
class ReceiptListItem:
    id: int
    kind: str
    status: str
    authority_progressive: str | None
    authority_transaction_id: str | None
    created_at: datetime | None
    total: str
    lines: list[ReceiptLineItem]


def _to_item(document: CommercialDocument) -> ReceiptListItem:
    total = sum((line.gross_unit_price * line.quantity for line in document.lines), Decimal("0"))
    return ReceiptListItem(
        id=document.id,
        kind=document.kind,
        status=document.status,
        authority_progressive=document.authority_progressive,
        authority_transaction_id=document.authority_transaction_id,
        created_at=document.created_at,
        total=to_amount(total),
        lines=[
            ReceiptLineItem(
                description=line.description,
                quantity=str(line.quantity),
                gross_unit_price=str(line.gross_unit_price),
                vat_code=line.vat_code,
            )
            for line in document.lines
        ],
    )


def search_receipts(
    session,
    user_id: str,
    business_id: int,
    *,
    date_from: date | None = None,
    date_to: date | None = None,
    progressive: str | None = None,
    status: DocumentStatus | str | None = None,
) -> list[ReceiptListItem]:
    """
    What it does:
    - Lists the business' sale receipts from the local DB (no authority call), newest first.

    Behavior:
    - VOID documents are bookkeeping and never listed; a voided sale shows status VOID_ACCEPTED.
    - Date range is inclusive on both ends; `progressive` is a partial match.
    - Raises NotFoundError when the business does not exist or is not the caller's.
    """
    if not BusinessRepository(session).is_owned_by(business_id, user_id):
        raise NotFoundError(f"Business {business_id} not found")

    documents = CommercialDocumentRepository(session).list_sales(
        business_id,
        date_from=date_from,
        date_to=date_to,
        progressive=progressive,
        status=status,
    )
    return [_to_item(document) for document in documents]
