"""
receipt_lifecycle.py

What this module does
- Issues and voids fiscal receipts against the authority, exactly once per idempotency key.

Behavior summary
- A document row is inserted PENDING (insert-if-absent on the idempotency key) before any authority call;
  a replayed key returns the stored outcome without touching the portal.
- Every path that reached the portal ends ACCEPTED/VOID_ACCEPTED or ERROR: no row stays PENDING.
- Failures are returned as ReceiptFailure values with operator-safe messages; raw details are only logged.
- Commits are durable checkpoints: the PENDING row (with its lines) is committed before the first authority
  call, and every terminal write is committed on its own. A crash after the authority accepted therefore
  leaves a PENDING row, and a retry with the same key answers IN_PROGRESS instead of submitting twice.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

from pydantic import ValidationError

from fiscal_receipts.db.enums import DocumentKind, DocumentStatus
from fiscal_receipts.db.models import CommercialDocument
from fiscal_receipts.db.repositories.businesses import BusinessRepository
from fiscal_receipts.db.repositories.documents import CommercialDocumentRepository, NewLine
from fiscal_receipts.portal.factory import create_portal_client
from fiscal_receipts.portal.errors import PortalClientError
from fiscal_receipts.security.cipher import KeyRing
from fiscal_receipts.services.credentials import load_portal_credentials, require_verified_credentials
from fiscal_receipts.services.payload_mapper import map_sale_payload, map_void_payload, round2
from fiscal_receipts.services.portal_client import AuthorityResponse, PortalClient
from fiscal_receipts.services.schemas import (
    EmitReceiptInput,
    OriginalDocumentRef,
    PaymentRequest,
    SaleDocumentRequest,
    SaleLineRequest,
    VoidReceiptInput,
    VoidRequest,
)
from fiscal_receipts.utils.errors import CipherError, CredentialsError
from fiscal_receipts.utils.logging import get_logger
from fiscal_receipts.utils.results import ErrorKind, kind_of

log = get_logger("receipt-lifecycle")

_FAILURE_MESSAGES = {
    ErrorKind.AUTH: "Portal login failed. Check the portal credentials in the settings.",
    ErrorKind.SESSION_EXPIRED: "The portal session expired. Try again.",
    ErrorKind.NETWORK: "The tax authority portal is unreachable. Try again later.",
    ErrorKind.CIPHER: "Stored portal credentials cannot be read. Save them again.",
}
_EMIT_FALLBACK = "Error while issuing the receipt. Try again later."
_VOID_FALLBACK = "Error while voiding the receipt. Try again later."


@dataclass(frozen=True)
class ReceiptIssued:
    document_id: int
    authority_transaction_id: str | None
    authority_progressive: str | None
    ok: bool = True


@dataclass(frozen=True)
class ReceiptVoided:
    void_document_id: int
    authority_transaction_id: str | None
    authority_progressive: str | None
    ok: bool = True


@dataclass(frozen=True)
class ReceiptFailure:
    error_kind: ErrorKind
    error: str
    document_id: int | None = None
    ok: bool = False


EmitReceiptResult = ReceiptIssued | ReceiptFailure
VoidReceiptResult = ReceiptVoided | ReceiptFailure


def _validation_message(exc: ValidationError) -> str:
    first = exc.errors()[0]
    where = ".".join(str(part) for part in first["loc"])
    return f"Invalid request ({where}): {first['msg']}"


def _rejection_message(response: AuthorityResponse) -> str:
    details = "; ".join(e.description for e in response.errors if e.description)
    if not details:
        return "The tax authority rejected the document."
    return f"The tax authority rejected the document: {details}"


class ReceiptLifecycleService:
    """
    What it does:
    - Orchestrates credentials, persistence and the portal client for the emit and void use cases.

    Behavior:
    - One portal client per use-case call (from `portal_factory`), always logged out before returning.
    - Never retries on its own; the portal client's single re-login on 401 is the only retry.
    """

    def __init__(
        self,
        *,
        key_ring: KeyRing,
        portal_factory: Callable[[], PortalClient] = create_portal_client,
    ) -> None:
        self.key_ring = key_ring
        self.portal_factory = portal_factory

    # ---------- emit ----------

    def emit_receipt(self, session, user_id: str, data: EmitReceiptInput | dict[str, Any]) -> EmitReceiptResult:
        try:
            request = data if isinstance(data, EmitReceiptInput) else EmitReceiptInput.model_validate(data)
        except ValidationError as exc:
            return ReceiptFailure(ErrorKind.VALIDATION, _validation_message(exc))

        if not BusinessRepository(session).is_owned_by(request.business_id, user_id):
            return ReceiptFailure(ErrorKind.FORBIDDEN, "Not authorized.")

        repo = CommercialDocumentRepository(session)
        existing = repo.get_by_idempotency_key(request.idempotency_key)
        if existing is not None:
            return self._emit_replay(existing, request)

        try:
            record = require_verified_credentials(session, request.business_id)
        except CredentialsError as exc:
            return ReceiptFailure(ErrorKind.CREDENTIALS, str(exc))

        # the receipt date is fixed once, so a replay and the stored request agree on it
        if request.date is None:
            request = request.model_copy(update={"date": date.today().isoformat()})

        document, created = repo.insert_if_absent(
            business_id=request.business_id,
            kind=DocumentKind.SALE,
            idempotency_key=request.idempotency_key,
            public_request=request.model_dump(mode="json"),
        )
        if not created:
            return self._emit_replay(document, request)

        repo.add_lines(
            document.id,
            [
                NewLine(
                    description=line.description,
                    quantity=line.quantity,
                    gross_unit_price=line.gross_unit_price,
                    vat_code=line.vat_code,
                )
                for line in request.lines
            ],
        )
        # the PENDING marker must outlive this process before the authority sees anything
        session.commit()
        sale = self._sale_document(request)

        portal = self.portal_factory()
        authority_request: dict[str, Any] | None = None
        try:
            portal.login(load_portal_credentials(record, self.key_ring))
            identity = portal.get_fiscal_data()
            authority_request = map_sale_payload(sale, identity)
            response = portal.submit_sale(authority_request)
        except Exception as exc:
            kind = self._log_failure("Receipt emission", document, exc)
            repo.mark_failed(document, authority_request=authority_request)
            session.commit()
            return ReceiptFailure(kind, _FAILURE_MESSAGES.get(kind, _EMIT_FALLBACK), document_id=document.id)
        finally:
            self._logout(portal)

        if not response.success:
            log.warning(
                f"Receipt {document.id} rejected by the authority: "
                f"{[(e.code, e.description) for e in response.errors]}"
            )
            repo.mark_failed(document, authority_request=authority_request, authority_response=response.raw)
            session.commit()
            return ReceiptFailure(ErrorKind.REJECTED, _rejection_message(response), document_id=document.id)

        repo.mark_accepted(
            document,
            status=DocumentStatus.ACCEPTED,
            transaction_id=response.transaction_id,
            progressive=response.progressive,
            authority_request=authority_request,
            authority_response=response.raw,
        )
        line_ids = [str(line.get("idElementoContabile") or "") for line in response.raw.get("elementiContabili") or []]
        if any(line_ids):
            repo.set_authority_line_ids(document.id, line_ids)
        session.commit()

        log.info(f"Receipt {document.id} accepted: idtrx={response.transaction_id} progressive={response.progressive}")
        return ReceiptIssued(
            document_id=document.id,
            authority_transaction_id=response.transaction_id,
            authority_progressive=response.progressive,
        )

    @staticmethod
    def _emit_replay(document: CommercialDocument, request: EmitReceiptInput) -> EmitReceiptResult:
        """Outcome of a key that already has a document; never contacts the authority."""
        if document.kind != DocumentKind.SALE.value or document.business_id != request.business_id:
            return ReceiptFailure(ErrorKind.CONFLICT, "This idempotency key was already used for another document.")

        status = document.status
        if status in (DocumentStatus.ACCEPTED.value, DocumentStatus.VOID_ACCEPTED.value):
            return ReceiptIssued(
                document_id=document.id,
                authority_transaction_id=document.authority_transaction_id,
                authority_progressive=document.authority_progressive,
            )
        if status == DocumentStatus.PENDING.value:
            return ReceiptFailure(
                ErrorKind.IN_PROGRESS, "This receipt is still being processed.", document_id=document.id
            )
        return ReceiptFailure(
            ErrorKind.PREVIOUS_ATTEMPT_FAILED,
            "A previous attempt with this idempotency key failed. Use a new key to retry.",
            document_id=document.id,
        )

    @staticmethod
    def _sale_document(request: EmitReceiptInput) -> SaleDocumentRequest:
        """Till cart -> mapper input: VAT-inclusive lines paid in full with one payment method."""
        total = sum((round2(line.gross_unit_price * line.quantity) for line in request.lines), Decimal("0"))
        return SaleDocumentRequest(
            date=request.date,
            lines=[
                SaleLineRequest(
                    description=line.description,
                    quantity=line.quantity,
                    unit_price_gross=line.gross_unit_price,
                    vat_code=line.vat_code,
                )
                for line in request.lines
            ],
            payments=[PaymentRequest(type=request.payment_method, amount=total)],
        )

    # ---------- void ----------

    def void_receipt(self, session, user_id: str, data: VoidReceiptInput | dict[str, Any]) -> VoidReceiptResult:
        """
        What it does:
        - Cancels an accepted sale at the authority and records the VOID document.

        Behavior:
        - The sale must belong to the business, be a SALE, be ACCEPTED and carry idtrx + progressive;
          all of it is checked before any authority call.
        - A key whose VOID already exists is answered from the DB, before the sale-status check
          (after a successful void the sale itself is VOID_ACCEPTED).
        - Success commits twice: first the VOID becomes VOID_ACCEPTED, then the sale flips to VOID_ACCEPTED.
          A crash between the two leaves the pair for the operator to reconcile.
        """
        try:
            request = data if isinstance(data, VoidReceiptInput) else VoidReceiptInput.model_validate(data)
        except ValidationError as exc:
            return ReceiptFailure(ErrorKind.VALIDATION, _validation_message(exc))

        if not BusinessRepository(session).is_owned_by(request.business_id, user_id):
            return ReceiptFailure(ErrorKind.FORBIDDEN, "Not authorized.")

        repo = CommercialDocumentRepository(session)
        sale = repo.find(request.document_id)
        if sale is None or sale.business_id != request.business_id:
            return ReceiptFailure(ErrorKind.NOT_FOUND, "Receipt not found.")
        if sale.kind != DocumentKind.SALE.value:
            return ReceiptFailure(ErrorKind.VALIDATION, "Only sale receipts can be voided.", document_id=sale.id)

        existing = repo.get_by_idempotency_key(request.idempotency_key)
        if existing is not None:
            return self._void_replay(existing, sale)

        if sale.status != DocumentStatus.ACCEPTED.value:
            return ReceiptFailure(
                ErrorKind.CONFLICT, f"Only accepted receipts can be voided (status {sale.status}).", document_id=sale.id
            )
        if not sale.authority_transaction_id or not sale.authority_progressive:
            return ReceiptFailure(
                ErrorKind.INCONSISTENT_STATE,
                "The receipt has no authority transaction data and cannot be voided.",
                document_id=sale.id,
            )

        try:
            record = require_verified_credentials(session, request.business_id)
        except CredentialsError as exc:
            return ReceiptFailure(ErrorKind.CREDENTIALS, str(exc))

        void_doc, created = repo.insert_if_absent(
            business_id=request.business_id,
            kind=DocumentKind.VOID,
            idempotency_key=request.idempotency_key,
            public_request=request.model_dump(mode="json"),
            voided_document_id=sale.id,
        )
        if not created:
            return self._void_replay(void_doc, sale)
        session.commit()

        void_request = VoidRequest(
            idempotency_key=request.idempotency_key,
            original_document=OriginalDocumentRef(
                transaction_id=sale.authority_transaction_id,
                document_progressive=sale.authority_progressive,
                date=self._sale_date(sale),
            ),
        )

        portal = self.portal_factory()
        authority_request: dict[str, Any] | None = None
        try:
            portal.login(load_portal_credentials(record, self.key_ring))
            identity = portal.get_fiscal_data()
            detail = portal.get_document(sale.authority_transaction_id)
            authority_request = map_void_payload(void_request, identity, detail)
            response = portal.submit_void(authority_request)
        except Exception as exc:
            kind = self._log_failure("Receipt void", void_doc, exc)
            repo.mark_failed(void_doc, authority_request=authority_request)
            session.commit()
            return ReceiptFailure(kind, _FAILURE_MESSAGES.get(kind, _VOID_FALLBACK), document_id=void_doc.id)
        finally:
            self._logout(portal)

        if not response.success:
            log.warning(
                f"Void {void_doc.id} of receipt {sale.id} rejected by the authority: "
                f"{[(e.code, e.description) for e in response.errors]}"
            )
            repo.mark_failed(void_doc, authority_request=authority_request, authority_response=response.raw)
            session.commit()
            return ReceiptFailure(ErrorKind.REJECTED, _rejection_message(response), document_id=void_doc.id)

        repo.mark_accepted(
            void_doc,
            status=DocumentStatus.VOID_ACCEPTED,
            transaction_id=response.transaction_id,
            progressive=response.progressive,
            authority_request=authority_request,
            authority_response=response.raw,
        )
        session.commit()

        if any(detail.line_ids):
            repo.set_authority_line_ids(sale.id, detail.line_ids)
        repo.mark_sale_voided(sale)
        session.commit()

        log.info(f"Receipt {sale.id} voided by document {void_doc.id}: idtrx={response.transaction_id}")
        return ReceiptVoided(
            void_document_id=void_doc.id,
            authority_transaction_id=response.transaction_id,
            authority_progressive=response.progressive,
        )

    @staticmethod
    def _void_replay(existing: CommercialDocument, sale: CommercialDocument) -> VoidReceiptResult:
        if existing.kind != DocumentKind.VOID.value or existing.voided_document_id != sale.id:
            return ReceiptFailure(ErrorKind.CONFLICT, "This idempotency key was already used for another document.")

        if existing.status == DocumentStatus.VOID_ACCEPTED.value:
            return ReceiptVoided(
                void_document_id=existing.id,
                authority_transaction_id=existing.authority_transaction_id,
                authority_progressive=existing.authority_progressive,
            )
        return ReceiptFailure(
            ErrorKind.INCONSISTENT_STATE,
            f"A void with this idempotency key is in state {existing.status}. Check the receipt with the authority.",
            document_id=existing.id,
        )

    @staticmethod
    def _sale_date(sale: CommercialDocument) -> str:
        stored = (sale.public_request or {}).get("date")
        if stored:
            return stored
        return (sale.created_at.date() if sale.created_at else date.today()).isoformat()

    # ---------- shared ----------

    @staticmethod
    def _log_failure(what: str, document: CommercialDocument, exc: Exception) -> ErrorKind:
        kind = kind_of(exc)
        if isinstance(exc, PortalClientError):
            log.error(f"{what} failed for document {document.id}: {exc.code} {exc.message}")
        elif isinstance(exc, CipherError):
            log.error(f"{what} failed for document {document.id}: credentials cannot be decrypted ({exc})")
        else:
            log.exception(f"{what} failed for document {document.id} with an unexpected error")
        return kind or ErrorKind.INTERNAL

    @staticmethod
    def _logout(portal: PortalClient) -> None:
        try:
            portal.logout()
        except PortalClientError as exc:
            log.warning(f"Portal logout failed: {exc.code}")
