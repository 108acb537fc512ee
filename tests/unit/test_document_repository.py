from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from fiscal_receipts.db.enums import DocumentKind, DocumentStatus, VatCode
from fiscal_receipts.db.repositories.documents import CommercialDocumentRepository, NewLine, check_transition
from fiscal_receipts.utils.errors import InvalidTransitionError, NotFoundError


def new_sale(repo, business, key="k-1"):
    document, created = repo.insert_if_absent(business_id=business.id, kind=DocumentKind.SALE, idempotency_key=key)
    assert created is True
    return document


def test_insert_if_absent_is_idempotent(session, business):
    repo = CommercialDocumentRepository(session)

    first, created_first = repo.insert_if_absent(
        business_id=business.id, kind=DocumentKind.SALE, idempotency_key="k-1", public_request={"a": 1}
    )
    second, created_second = repo.insert_if_absent(
        business_id=business.id, kind=DocumentKind.SALE, idempotency_key="k-1", public_request={"a": 2}
    )

    assert created_first is True
    assert created_second is False
    assert second.id == first.id
    assert first.status == DocumentStatus.PENDING.value
    assert second.public_request == {"a": 1}


def test_insert_rejects_unknown_kind(session, business):
    with pytest.raises(ValueError):
        CommercialDocumentRepository(session).insert_if_absent(
            business_id=business.id, kind="REFUND", idempotency_key="k-1"
        )


def test_get_missing_raises_not_found(session):
    repo = CommercialDocumentRepository(session)

    with pytest.raises(NotFoundError):
        repo.get(12345)
    assert repo.find(12345) is None


def test_lines_keep_order_and_authority_ids(session, business):
    repo = CommercialDocumentRepository(session)
    document = new_sale(repo, business)

    repo.add_lines(
        document.id,
        [
            NewLine("Caffe", Decimal("1"), Decimal("1.20"), VatCode.VAT_22),
            NewLine("Acqua", Decimal("2.5"), Decimal("0.50"), "N2"),
        ],
    )
    repo.set_authority_line_ids(document.id, ["A1", ""])

    lines = repo.list_lines(document.id)
    assert [(line.line_index, line.description) for line in lines] == [(0, "Caffe"), (1, "Acqua")]
    assert [line.authority_line_id for line in lines] == ["A1", None]
    assert lines[1].vat_code == "N2"


def test_add_lines_rejects_unknown_vat_code(session, business):
    repo = CommercialDocumentRepository(session)
    document = new_sale(repo, business)

    with pytest.raises(ValueError):
        repo.add_lines(document.id, [NewLine("x", Decimal("1"), Decimal("1"), "21")])


def test_pending_can_reach_any_terminal_status(session, business):
    repo = CommercialDocumentRepository(session)
    for status in (DocumentStatus.ACCEPTED, DocumentStatus.REJECTED, DocumentStatus.ERROR):
        document = new_sale(repo, business, key=f"k-{status}")
        assert check_transition(document, status) == status.value


def test_terminal_statuses_do_not_move(session, business):
    repo = CommercialDocumentRepository(session)
    document = new_sale(repo, business)
    repo.mark_failed(document)

    with pytest.raises(InvalidTransitionError):
        repo.mark_accepted(
            document,
            status=DocumentStatus.ACCEPTED,
            transaction_id="1",
            progressive="P",
            authority_request=None,
            authority_response=None,
        )
    assert document.status == DocumentStatus.ERROR.value


def test_only_accepted_sales_flip_to_void_accepted(session, business):
    repo = CommercialDocumentRepository(session)
    sale = new_sale(repo, business)
    repo.mark_accepted(
        sale,
        status=DocumentStatus.ACCEPTED,
        transaction_id="151000001",
        progressive="DCW2026/5111-0001",
        authority_request={},
        authority_response={"esito": True},
    )
    repo.mark_sale_voided(sale)
    assert sale.status == DocumentStatus.VOID_ACCEPTED.value

    void, _ = repo.insert_if_absent(business_id=business.id, kind=DocumentKind.VOID, idempotency_key="v-1")
    repo.mark_accepted(
        void,
        status=DocumentStatus.ACCEPTED,
        transaction_id="2",
        progressive="P2",
        authority_request={},
        authority_response={},
    )
    with pytest.raises(InvalidTransitionError):
        repo.mark_sale_voided(void)


def test_list_sales_filters_and_orders(session, business):
    repo = CommercialDocumentRepository(session)
    old = new_sale(repo, business, key="old")
    recent = new_sale(repo, business, key="recent")
    repo.insert_if_absent(business_id=business.id, kind=DocumentKind.VOID, idempotency_key="void")

    old.created_at = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)
    old.authority_progressive = "DCW2026/5111-0001"
    recent.created_at = datetime(2026, 1, 20, 9, 0, tzinfo=timezone.utc)
    recent.authority_progressive = "DCW2026/5111-0002"
    session.flush()

    assert [d.id for d in repo.list_sales(business.id)] == [recent.id, old.id]
    assert [d.id for d in repo.list_sales(business.id, date_from=date(2026, 1, 15))] == [recent.id]
    assert [d.id for d in repo.list_sales(business.id, date_to=date(2026, 1, 10))] == [old.id]
    assert [d.id for d in repo.list_sales(business.id, progressive="0002")] == [recent.id]
    assert repo.list_sales(business.id, status=DocumentStatus.ACCEPTED) == []
    assert repo.list_sales(business.id, date_from=date(2026, 1, 21)) == []
    assert repo.list_sales(business.id, date_to=date(2026, 1, 10) - timedelta(days=1)) == []
