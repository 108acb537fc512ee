from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from fiscal_receipts.db.enums import DocumentKind, DocumentStatus, TERMINAL_STATUSES, VatCode
from fiscal_receipts.db.models import CommercialDocument, CommercialDocumentLine
from fiscal_receipts.db.repositories.base import BaseRepository, utcnow
from fiscal_receipts.utils.errors import InvalidTransitionError, NotFoundError


def _normalize_status(status: DocumentStatus | str) -> str:
    """
    What it does:
    - Converts status input into the exact stored string.

    Behavior:
    - DocumentStatus -> its value; a string must match one of the allowed values.
    - Otherwise raises ValueError before any DB operation.
    """
    if isinstance(status, DocumentStatus):
        return status.value

    allowed = {s.value for s in DocumentStatus}
    if status not in allowed:
        raise ValueError(f"Invalid document status '{status}'. Allowed: {sorted(allowed)}")
    return status


def _normalize_kind(kind: DocumentKind | str) -> str:
    if isinstance(kind, DocumentKind):
        return kind.value

    allowed = {k.value for k in DocumentKind}
    if kind not in allowed:
        raise ValueError(f"Invalid document kind '{kind}'. Allowed: {sorted(allowed)}")
    return kind


def _normalize_vat_code(vat_code: VatCode | str) -> str:
    if isinstance(vat_code, VatCode):
        return vat_code.value

    allowed = {v.value for v in VatCode}
    if vat_code not in allowed:
        raise ValueError(f"Invalid VAT code '{vat_code}'. Allowed: {sorted(allowed)}")
    return vat_code


def check_transition(document: CommercialDocument, new_status: DocumentStatus | str) -> str:
    """
    What it does:
    - Validates a status change against the document lifecycle.

    Behavior:
    - PENDING may move to any terminal status.
    - ACCEPTED -> VOID_ACCEPTED is allowed only for SALE documents (the void flip).
    - Everything else raises InvalidTransitionError.
    """
    target = _normalize_status(new_status)
    current = document.status

    if current == DocumentStatus.PENDING.value and DocumentStatus(target) in TERMINAL_STATUSES:
        return target
    if (
        current == DocumentStatus.ACCEPTED.value
        and target == DocumentStatus.VOID_ACCEPTED.value
        and document.kind == DocumentKind.SALE.value
    ):
        return target

    raise InvalidTransitionError(
        f"Document {document.id} ({document.kind}) cannot move from {current} to {target}"
    )


@dataclass(frozen=True)
class NewLine:
    description: str
    quantity: Decimal
    gross_unit_price: Decimal
    vat_code: VatCode | str


class CommercialDocumentRepository(BaseRepository):
    def insert_if_absent(
        self,
        *,
        business_id: int,
        kind: DocumentKind | str,
        idempotency_key: str,
        public_request: dict[str, Any] | None = None,
        voided_document_id: int | None = None,
    ) -> tuple[CommercialDocument, bool]:
        """
        What it does:
        - Inserts a PENDING document unless one already holds `idempotency_key`.

        Behavior:
        - Single INSERT ... ON CONFLICT DO NOTHING on the unique key: of two concurrent callers
          exactly one gets created=True, the other reads back the winner's row.
        - Returns (document, created).
        """
        now = utcnow()
        stmt = (
            self._dialect_insert(CommercialDocument)
            .values(
                business_id=business_id,
                kind=_normalize_kind(kind),
                idempotency_key=idempotency_key,
                status=DocumentStatus.PENDING.value,
                public_request=public_request,
                voided_document_id=voided_document_id,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["idempotency_key"])
            .returning(CommercialDocument.id)
        )
        new_id = self.session.scalars(stmt).first()

        if new_id is not None:
            return self.get(new_id), True

        existing = self.get_by_idempotency_key(idempotency_key)
        if existing is None:
            raise NotFoundError(f"Document with idempotency key {idempotency_key} vanished after conflict")
        return existing, False

    def get(self, document_id: int, *, include_lines: bool = False) -> CommercialDocument:
        if not include_lines:
            document = self.session.get(CommercialDocument, document_id)
        else:
            stmt = (
                select(CommercialDocument)
                .where(CommercialDocument.id == document_id)
                .options(selectinload(CommercialDocument.lines))
            )
            document = self.session.scalars(stmt).first()

        if not document:
            raise NotFoundError(f"Document {document_id} not found")
        return document

    def find(self, document_id: int) -> CommercialDocument | None:
        return self.session.get(CommercialDocument, document_id)

    def get_by_idempotency_key(self, idempotency_key: str) -> CommercialDocument | None:
        stmt = select(CommercialDocument).where(CommercialDocument.idempotency_key == idempotency_key)
        return self.session.scalars(stmt).first()

    def add_lines(self, document_id: int, lines: Sequence[NewLine]) -> list[CommercialDocumentLine]:
        rows = [
            CommercialDocumentLine(
                document_id=document_id,
                line_index=index,
                description=line.description,
                quantity=line.quantity,
                gross_unit_price=line.gross_unit_price,
                vat_code=_normalize_vat_code(line.vat_code),
            )
            for index, line in enumerate(lines)
        ]
        self.session.add_all(rows)
        self.session.flush()
        return rows

    def list_lines(self, document_id: int) -> list[CommercialDocumentLine]:
        stmt = (
            select(CommercialDocumentLine)
            .where(CommercialDocumentLine.document_id == document_id)
            .order_by(CommercialDocumentLine.line_index.asc())
        )
        return list(self.session.scalars(stmt).all())

    def set_authority_line_ids(self, document_id: int, line_ids: Sequence[str]) -> None:
        """Stores the authority's line identifiers positionally; empty ids are skipped."""
        for line, line_id in zip(self.list_lines(document_id), line_ids):
            if line_id:
                line.authority_line_id = line_id
        self.session.flush()

    def mark_accepted(
        self,
        document: CommercialDocument,
        *,
        status: DocumentStatus,
        transaction_id: str | None,
        progressive: str | None,
        authority_request: dict[str, Any] | None,
        authority_response: dict[str, Any] | None,
    ) -> CommercialDocument:
        document.status = check_transition(document, status)
        document.authority_transaction_id = transaction_id
        document.authority_progressive = progressive
        document.authority_request = authority_request
        document.authority_response = authority_response
        document.updated_at = utcnow()
        self.session.flush()
        return document

    def mark_failed(
        self,
        document: CommercialDocument,
        *,
        status: DocumentStatus = DocumentStatus.ERROR,
        authority_request: dict[str, Any] | None = None,
        authority_response: dict[str, Any] | None = None,
    ) -> CommercialDocument:
        document.status = check_transition(document, status)
        if authority_request is not None:
            document.authority_request = authority_request
        if authority_response is not None:
            document.authority_response = authority_response
        document.updated_at = utcnow()
        self.session.flush()
        return document

    def mark_sale_voided(self, sale: CommercialDocument) -> CommercialDocument:
        sale.status = check_transition(sale, DocumentStatus.VOID_ACCEPTED)
        sale.updated_at = utcnow()
        self.session.flush()
        return sale

    def list_sales(
        self,
        business_id: int,
        *,
        date_from: date | None = None,
        date_to: date | None = None,
        progressive: str | None = None,
        status: DocumentStatus | str | None = None,
        limit: int = 200,
        offset: int = 0,
    ) -> list[CommercialDocument]:
        """
        What it does:
        - Lists SALE documents of one business, newest first, with their lines.

        Behavior:
        - date_from/date_to are inclusive calendar days on created_at.
        - progressive is a case-insensitive partial match.
        """
        stmt = (
            select(CommercialDocument)
            .where(CommercialDocument.business_id == business_id)
            .where(CommercialDocument.kind == DocumentKind.SALE.value)
            .options(selectinload(CommercialDocument.lines))
        )
        if date_from is not None:
            stmt = stmt.where(CommercialDocument.created_at >= datetime.combine(date_from, time.min))
        if date_to is not None:
            next_day = datetime.combine(date_to + timedelta(days=1), time.min)
            stmt = stmt.where(CommercialDocument.created_at < next_day)
        if progressive:
            stmt = stmt.where(CommercialDocument.authority_progressive.ilike(f"%{progressive}%"))
        if status is not None:
            stmt = stmt.where(CommercialDocument.status == _normalize_status(status))

        stmt = (
            stmt.order_by(CommercialDocument.created_at.desc(), CommercialDocument.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(self.session.scalars(stmt).all())
