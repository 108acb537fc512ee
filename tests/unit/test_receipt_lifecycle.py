from __future__ import annotations

from decimal import Decimal

import pytest
import requests
from sqlalchemy.orm import Session

from fiscal_receipts.db.enums import DocumentKind, DocumentStatus
from fiscal_receipts.db.repositories.credentials import PortalCredentialRepository
from fiscal_receipts.db.repositories.documents import CommercialDocumentRepository
from fiscal_receipts.portal.errors import AuthError, NetworkError
from fiscal_receipts.services.portal_client import AuthorityResponse
from fiscal_receipts.services.receipt_lifecycle import ReceiptLifecycleService
from fiscal_receipts.testing.fakes import OWNER_ID, PASSWORD, PIN, TAX_CODE, FakePortalClient, portal_factory_for
from fiscal_receipts.utils.results import ErrorKind

VOID_RESPONSE = AuthorityResponse.from_json(
    {"esito": True, "idtrx": "151000099", "progressivo": "DCW2026/5111-0002", "errori": []}
)


def emit_input(business, key="emit-1", **overrides):
    data = {
        "business_id": business.id,
        "idempotency_key": key,
        "lines": [
            {"description": "Caffe", "quantity": "1", "gross_unit_price": "1.20", "vat_code": "22"},
            {"description": "Cornetto", "quantity": "2", "gross_unit_price": "1.50", "vat_code": "10"},
        ],
        "payment_method": "CASH",
        "date": "2026-01-15",
    }
    data.update(overrides)
    return data


def service_with(portal, key_ring) -> ReceiptLifecycleService:
    return ReceiptLifecycleService(key_ring=key_ring, portal_factory=portal_factory_for(portal))


def emit_accepted(session, business, key_ring, key="emit-1"):
    portal = FakePortalClient()
    result = service_with(portal, key_ring).emit_receipt(session, OWNER_ID, emit_input(business, key=key))
    assert result.ok
    return result


# ---------- emit ----------


def test_emit_happy_path(session, business, credentials, key_ring):
    portal = FakePortalClient()
    result = service_with(portal, key_ring).emit_receipt(session, OWNER_ID, emit_input(business))

    assert result.ok is True
    assert result.authority_transaction_id == "151000001"
    assert result.authority_progressive == "DCW2026/5111-0001"
    assert portal.calls == ["login", "get_fiscal_data", "submit_sale", "logout"]
    assert portal.last_credentials.tax_code == TAX_CODE
    assert portal.last_credentials.password == PASSWORD
    assert portal.last_credentials.pin == PIN

    document = CommercialDocumentRepository(session).get(result.document_id, include_lines=True)
    assert document.status == DocumentStatus.ACCEPTED.value
    assert document.kind == DocumentKind.SALE.value
    assert document.authority_transaction_id == "151000001"
    assert document.authority_request == portal.payloads[0]
    assert document.authority_response["esito"] is True
    assert document.public_request["idempotency_key"] == "emit-1"
    assert [line.description for line in document.lines] == ["Caffe", "Cornetto"]
    assert document.lines[1].quantity == Decimal("2")

    body = portal.payloads[0]["documentoCommerciale"]
    assert body["ammontareComplessivo"] == "4.20"
    assert body["dataOra"] == "15/01/2026"
    assert {p["tipo"]: p["importo"] for p in body["vendita"]}["PC"] == "4.20"


def test_emit_twice_with_same_key_contacts_authority_once(session, business, credentials, key_ring):
    first = emit_accepted(session, business, key_ring)

    portal = FakePortalClient()
    second = service_with(portal, key_ring).emit_receipt(session, OWNER_ID, emit_input(business))

    assert second.ok is True
    assert second.document_id == first.document_id
    assert second.authority_progressive == first.authority_progressive
    assert portal.authority_calls == 0
    assert portal.calls == []


def test_emit_replay_of_pending_document_is_in_progress(session, business, credentials, key_ring):
    CommercialDocumentRepository(session).insert_if_absent(
        business_id=business.id, kind=DocumentKind.SALE, idempotency_key="emit-1"
    )
    portal = FakePortalClient()

    result = service_with(portal, key_ring).emit_receipt(session, OWNER_ID, emit_input(business))

    assert result.ok is False
    assert result.error_kind == ErrorKind.IN_PROGRESS
    assert portal.calls == []


def test_emit_failure_marks_error_and_replay_reports_previous_failure(session, business, credentials, key_ring):
    failing = FakePortalClient(fail_on={"submit_sale": NetworkError(requests.ConnectionError("reset"))})
    result = service_with(failing, key_ring).emit_receipt(session, OWNER_ID, emit_input(business))

    assert result.ok is False
    assert result.error_kind == ErrorKind.NETWORK
    assert "reset" not in result.error
    assert failing.calls[-1] == "logout"
    document = CommercialDocumentRepository(session).get(result.document_id)
    assert document.status == DocumentStatus.ERROR.value
    assert document.authority_request is not None

    portal = FakePortalClient()
    replay = service_with(portal, key_ring).emit_receipt(session, OWNER_ID, emit_input(business))

    assert replay.error_kind == ErrorKind.PREVIOUS_ATTEMPT_FAILED
    assert replay.document_id == result.document_id
    assert portal.calls == []


def test_emit_login_failure_is_auth_error(session, business, credentials, key_ring):
    portal = FakePortalClient(fail_on={"login": AuthError()})
    result = service_with(portal, key_ring).emit_receipt(session, OWNER_ID, emit_input(business))

    assert result.error_kind == ErrorKind.AUTH
    assert portal.calls == ["login", "logout"]
    document = CommercialDocumentRepository(session).get(result.document_id)
    assert document.status == DocumentStatus.ERROR.value
    assert document.authority_request is None


def test_emit_rejected_by_authority(session, business, credentials, key_ring):
    rejected = AuthorityResponse.from_json(
        {"esito": False, "errori": [{"codice": "0101", "descrizione": "Importo non valido"}]}
    )
    portal = FakePortalClient(response=rejected)

    result = service_with(portal, key_ring).emit_receipt(session, OWNER_ID, emit_input(business))

    assert result.ok is False
    assert result.error_kind == ErrorKind.REJECTED
    assert "Importo non valido" in result.error
    document = CommercialDocumentRepository(session).get(result.document_id)
    assert document.status == DocumentStatus.ERROR.value
    assert document.authority_response["esito"] is False


def test_emit_stores_authority_line_ids_when_returned(session, business, credentials, key_ring):
    response = AuthorityResponse.from_json(
        {
            "esito": True,
            "idtrx": "151000001",
            "progressivo": "DCW2026/5111-0001",
            "errori": [],
            "elementiContabili": [{"idElementoContabile": "A1"}, {"idElementoContabile": "A2"}],
        }
    )
    portal = FakePortalClient(response=response)

    result = service_with(portal, key_ring).emit_receipt(session, OWNER_ID, emit_input(business))

    lines = CommercialDocumentRepository(session).list_lines(result.document_id)
    assert [line.authority_line_id for line in lines] == ["A1", "A2"]


@pytest.mark.parametrize(
    "overrides",
    [
        {"lines": []},
        {"idempotency_key": ""},
        {"lines": [{"description": "x", "quantity": "0", "gross_unit_price": "1", "vat_code": "22"}]},
        {"lines": [{"description": "x", "quantity": "1", "gross_unit_price": "-1", "vat_code": "22"}]},
        {"lines": [{"description": "x", "quantity": "1", "gross_unit_price": "1", "vat_code": "21"}]},
        {"date": "2026-13-01"},
    ],
)
def test_emit_rejects_invalid_input_without_side_effects(session, business, credentials, key_ring, overrides):
    portal = FakePortalClient()
    result = service_with(portal, key_ring).emit_receipt(session, OWNER_ID, emit_input(business, **overrides))

    assert result.ok is False
    assert result.error_kind == ErrorKind.VALIDATION
    assert portal.calls == []
    assert CommercialDocumentRepository(session).list_sales(business.id) == []


def test_emit_for_someone_elses_business_is_forbidden(session, business, credentials, key_ring):
    portal = FakePortalClient()
    result = service_with(portal, key_ring).emit_receipt(session, "intruder", emit_input(business))

    assert result.error_kind == ErrorKind.FORBIDDEN
    assert portal.calls == []


def test_emit_requires_stored_credentials(session, business, key_ring):
    portal = FakePortalClient()
    result = service_with(portal, key_ring).emit_receipt(session, OWNER_ID, emit_input(business))

    assert result.error_kind == ErrorKind.CREDENTIALS
    assert portal.calls == []


def test_emit_requires_verified_credentials(session, business, credentials, key_ring):
    credentials.verified_at = None
    session.flush()
    portal = FakePortalClient()

    result = service_with(portal, key_ring).emit_receipt(session, OWNER_ID, emit_input(business))

    assert result.error_kind == ErrorKind.CREDENTIALS
    assert "verified" in result.error
    assert portal.calls == []


def test_emit_with_unreadable_credentials_fails_before_login(session, business, credentials, key_ring):
    PortalCredentialRepository(session).replace_envelopes(
        credentials,
        encrypted_tax_code="garbage",
        encrypted_password="garbage",
        encrypted_pin="garbage",
        key_version=1,
    )
    portal = FakePortalClient()

    result = service_with(portal, key_ring).emit_receipt(session, OWNER_ID, emit_input(business))

    assert result.error_kind == ErrorKind.CIPHER
    assert "login" not in portal.calls
    assert portal.calls == ["logout"]



def fresh_session(old: Session, engine) -> Session:
    """Throws away the caller's transaction, as a crash before its commit would."""
    old.rollback()
    old.close()
    return Session(bind=engine, expire_on_commit=False)


def test_accepted_receipt_survives_a_lost_caller_transaction(engine, session, business, credentials, key_ring):
    request = emit_input(business)
    first = service_with(FakePortalClient(), key_ring).emit_receipt(session, OWNER_ID, request)
    assert first.ok is True

    session = fresh_session(session, engine)
    portal = FakePortalClient()
    replay = service_with(portal, key_ring).emit_receipt(session, OWNER_ID, request)

    assert replay.ok is True
    assert replay.document_id == first.document_id
    assert replay.authority_transaction_id == "151000001"
    assert portal.calls == []
    session.close()


def test_crash_during_submission_leaves_a_pending_marker(engine, session, business, credentials, key_ring):
    request = emit_input(business)
    crashing = FakePortalClient(fail_on={"submit_sale": SystemExit(1)})

    with pytest.raises(SystemExit):
        service_with(crashing, key_ring).emit_receipt(session, OWNER_ID, request)
    assert crashing.calls[-1] == "logout"

    session = fresh_session(session, engine)
    document = CommercialDocumentRepository(session).get_by_idempotency_key("emit-1")
    assert document.status == DocumentStatus.PENDING.value
    assert len(CommercialDocumentRepository(session).list_lines(document.id)) == 2

    portal = FakePortalClient()
    replay = service_with(portal, key_ring).emit_receipt(session, OWNER_ID, request)

    assert replay.error_kind == ErrorKind.IN_PROGRESS
    assert portal.calls == []
    session.close()


def test_replay_after_credentials_reset_returns_stored_outcome(session, business, credentials, key_ring):
    first = emit_accepted(session, business, key_ring)
    credentials.verified_at = None
    session.flush()

    portal = FakePortalClient()
    replay = service_with(portal, key_ring).emit_receipt(session, OWNER_ID, emit_input(business))

    assert replay.ok is True
    assert replay.document_id == first.document_id
    assert portal.calls == []


# ---------- void ----------


def void_input(business, document_id, key="void-1"):
    return {"business_id": business.id, "document_id": document_id, "idempotency_key": key}


def test_void_happy_path(session, business, credentials, key_ring):
    emitted = emit_accepted(session, business, key_ring)
    portal = FakePortalClient(response=VOID_RESPONSE)

    result = service_with(portal, key_ring).void_receipt(session, OWNER_ID, void_input(business, emitted.document_id))

    assert result.ok is True
    assert result.authority_transaction_id == "151000099"
    assert portal.calls == ["login", "get_fiscal_data", "get_document", "submit_void", "logout"]

    payload = portal.payloads[0]
    assert payload["idtrx"] == "151000001"
    assert payload["documentoCommerciale"]["resoAnnullo"] == {
        "tipologia": "A",
        "dataOra": "15/01/2026",
        "progressivo": "DCW2026/5111-0001",
    }
    assert "vendita" not in payload["documentoCommerciale"]

    repo = CommercialDocumentRepository(session)
    void_doc = repo.get(result.void_document_id)
    sale = repo.get(emitted.document_id, include_lines=True)
    assert void_doc.kind == DocumentKind.VOID.value
    assert void_doc.status == DocumentStatus.VOID_ACCEPTED.value
    assert void_doc.voided_document_id == sale.id
    assert sale.status == DocumentStatus.VOID_ACCEPTED.value
    assert sale.lines[0].authority_line_id == "9001"


def test_void_replay_returns_stored_ids_without_authority(session, business, credentials, key_ring):
    emitted = emit_accepted(session, business, key_ring)
    first = service_with(FakePortalClient(response=VOID_RESPONSE), key_ring).void_receipt(
        session, OWNER_ID, void_input(business, emitted.document_id)
    )

    portal = FakePortalClient()
    replay = service_with(portal, key_ring).void_receipt(session, OWNER_ID, void_input(business, emitted.document_id))

    assert replay.ok is True
    assert replay.void_document_id == first.void_document_id
    assert replay.authority_transaction_id == "151000099"
    assert portal.calls == []


def test_void_with_pending_void_is_inconsistent(session, business, credentials, key_ring):
    emitted = emit_accepted(session, business, key_ring)
    CommercialDocumentRepository(session).insert_if_absent(
        business_id=business.id,
        kind=DocumentKind.VOID,
        idempotency_key="void-1",
        voided_document_id=emitted.document_id,
    )
    portal = FakePortalClient()

    result = service_with(portal, key_ring).void_receipt(session, OWNER_ID, void_input(business, emitted.document_id))

    assert result.error_kind == ErrorKind.INCONSISTENT_STATE
    assert portal.calls == []


def test_void_of_failed_sale_is_refused_before_authority(session, business, credentials, key_ring):
    failing = FakePortalClient(fail_on={"submit_sale": NetworkError(requests.ConnectionError("reset"))})
    emitted = service_with(failing, key_ring).emit_receipt(session, OWNER_ID, emit_input(business))
    portal = FakePortalClient()

    result = service_with(portal, key_ring).void_receipt(session, OWNER_ID, void_input(business, emitted.document_id))

    assert result.ok is False
    assert result.error_kind == ErrorKind.CONFLICT
    assert portal.calls == []
    assert CommercialDocumentRepository(session).get_by_idempotency_key("void-1") is None


def test_void_of_void_document_is_refused(session, business, credentials, key_ring):
    emitted = emit_accepted(session, business, key_ring)
    voided = service_with(FakePortalClient(response=VOID_RESPONSE), key_ring).void_receipt(
        session, OWNER_ID, void_input(business, emitted.document_id)
    )
    portal = FakePortalClient()

    result = service_with(portal, key_ring).void_receipt(
        session, OWNER_ID, void_input(business, voided.void_document_id, key="void-2")
    )

    assert result.error_kind == ErrorKind.VALIDATION
    assert portal.calls == []


def test_void_of_already_voided_sale_with_new_key_is_refused(session, business, credentials, key_ring):
    emitted = emit_accepted(session, business, key_ring)
    service_with(FakePortalClient(response=VOID_RESPONSE), key_ring).void_receipt(
        session, OWNER_ID, void_input(business, emitted.document_id)
    )
    portal = FakePortalClient()

    result = service_with(portal, key_ring).void_receipt(
        session, OWNER_ID, void_input(business, emitted.document_id, key="void-2")
    )

    assert result.error_kind == ErrorKind.CONFLICT
    assert portal.calls == []


def test_void_of_unknown_document_is_not_found(session, business, credentials, key_ring):
    portal = FakePortalClient()
    result = service_with(portal, key_ring).void_receipt(session, OWNER_ID, void_input(business, 999))

    assert result.error_kind == ErrorKind.NOT_FOUND
    assert portal.calls == []


def test_void_failure_keeps_sale_accepted(session, business, credentials, key_ring):
    emitted = emit_accepted(session, business, key_ring)
    portal = FakePortalClient(fail_on={"get_document": NetworkError(requests.Timeout("slow"))})

    result = service_with(portal, key_ring).void_receipt(session, OWNER_ID, void_input(business, emitted.document_id))

    assert result.error_kind == ErrorKind.NETWORK
    assert portal.calls[-1] == "logout"
    repo = CommercialDocumentRepository(session)
    assert repo.get(result.document_id).status == DocumentStatus.ERROR.value
    assert repo.get(emitted.document_id).status == DocumentStatus.ACCEPTED.value

    replay = service_with(FakePortalClient(), key_ring).void_receipt(
        session, OWNER_ID, void_input(business, emitted.document_id)
    )
    assert replay.error_kind == ErrorKind.INCONSISTENT_STATE


def test_accepted_void_survives_a_lost_caller_transaction(engine, session, business, credentials, key_ring):
    emitted = emit_accepted(session, business, key_ring)
    request = void_input(business, emitted.document_id)
    first = service_with(FakePortalClient(response=VOID_RESPONSE), key_ring).void_receipt(session, OWNER_ID, request)
    assert first.ok is True

    session = fresh_session(session, engine)
    assert CommercialDocumentRepository(session).get(emitted.document_id).status == DocumentStatus.VOID_ACCEPTED.value

    portal = FakePortalClient()
    replay = service_with(portal, key_ring).void_receipt(session, OWNER_ID, request)

    assert replay.ok is True
    assert replay.void_document_id == first.void_document_id
    assert portal.calls == []
    session.close()
