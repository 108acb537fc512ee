"""
payload_mapper.py

What this module does
- Converts a domestic sale/void request into the authority's document payload (format DCW10).

Behavior summary
- Pure functions, no I/O, exact Decimal arithmetic with ROUND_HALF_UP at every intermediate step.
- VAT is always the remainder (net gross - taxable net), so the two figures of a line add up exactly.
- Money is emitted as fixed 2-decimal strings, dates as dd/MM/yyyy.
- The payment vector is positional: six slots, always present, zero by default.
"""

from __future__ import annotations

import copy
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from fiscal_receipts.db.enums import PaymentType, VatCode
from fiscal_receipts.services.portal_client import AuthorityDocumentDetail, FiscalIdentity
from fiscal_receipts.services.schemas import (
    PaymentRequest,
    SaleDocumentRequest,
    SaleLineRequest,
    VoidRequest,
)

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")

TRANSMISSION_FORMAT = "DCW10"

PAYMENT_TYPE_MAP: dict[PaymentType, str] = {
    PaymentType.CASH: "PC",
    PaymentType.ELECTRONIC: "PE",
    PaymentType.MEAL_VOUCHER: "TR",
    PaymentType.NOT_COLLECTED_INVOICE: "NR_EF",
    PaymentType.NOT_COLLECTED_SERVICE: "NR_PS",
    PaymentType.NOT_COLLECTED_CREDIT: "NR_CS",
}

# slot order of the authority's payment vector
PAYMENT_SLOTS: tuple[str, ...] = ("PC", "PE", "TR", "NR_EF", "NR_PS", "NR_CS")
NOT_COLLECTED_SLOTS = frozenset({"NR_EF", "NR_PS", "NR_CS"})
MEAL_VOUCHER_SLOT = "TR"


def round2(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_amount(value: Decimal | int | str) -> str:
    """Fixed 2-decimal string, half-up: Decimal("1.005") -> "1.01"."""
    return str(round2(Decimal(value)))


def to_authority_date(iso: str) -> str:
    """yyyy-MM-dd -> dd/MM/yyyy"""
    year, month, day = iso.split("-")
    return f"{day}/{month}/{year}"


def vat_rate(vat_code: VatCode | str) -> Decimal | None:
    """Numeric rate for a VAT code, None for nature (no-VAT) codes."""
    code = VatCode(vat_code)
    if code.is_nature:
        return None
    return Decimal(code.value)


def compute_line_amounts(line: SaleLineRequest) -> dict[str, Any]:
    """
    Computes one authority line ("elementoContabile").

    With a numeric rate the gross price is VAT-inclusive:
        taxable     = round2(gross_total / (1 + rate/100))
        taxable_net = round2(net_gross / (1 + rate/100))
        vat         = net_gross - taxable_net
    With a nature code the gross price is the net price and VAT is zero.
    """
    gross_total = round2(line.unit_price_gross * line.quantity)
    discount_total = round2(line.unit_discount * line.quantity)
    net_gross = gross_total - discount_total

    rate = vat_rate(line.vat_code)
    if rate is None:
        taxable = gross_total
        taxable_net = net_gross
        vat = ZERO
        unit_price = gross_total
    else:
        divisor = 1 + rate / HUNDRED
        taxable = round2(gross_total / divisor)
        taxable_net = round2(net_gross / divisor)
        vat = round2(net_gross - taxable_net)
        unit_price = taxable

    return {
        "idElementoContabile": "",
        "resiPregressi": to_amount(ZERO),
        "reso": to_amount(ZERO),
        "quantita": to_amount(line.quantity),
        "descrizioneProdotto": line.description,
        "prezzoLordo": to_amount(gross_total),
        "prezzoUnitario": to_amount(unit_price),
        "scontoUnitario": to_amount(line.unit_discount),
        "scontoLordo": to_amount(discount_total),
        "aliquotaIVA": VatCode(line.vat_code).value,
        "importoIVA": to_amount(vat),
        "imponibile": to_amount(taxable),
        "imponibileNetto": to_amount(taxable_net),
        "totale": to_amount(net_gross),
        "omaggio": "Y" if line.is_gift else "N",
    }


def map_payments(payments: list[PaymentRequest]) -> list[dict[str, str]]:
    """
    Builds the 6-slot payment vector in PAYMENT_SLOTS order.

    Repeated payment types are summed into their slot; the meal-voucher slot always carries a count.
    """
    amounts: dict[str, Decimal] = {slot: ZERO for slot in PAYMENT_SLOTS}
    voucher_count = 0

    for payment in payments:
        slot = PAYMENT_TYPE_MAP[PaymentType(payment.type)]
        amounts[slot] += payment.amount
        if slot == MEAL_VOUCHER_SLOT and payment.count is not None:
            voucher_count += payment.count

    vector: list[dict[str, str]] = []
    for slot in PAYMENT_SLOTS:
        entry = {"tipo": slot, "importo": to_amount(amounts[slot])}
        if slot == MEAL_VOUCHER_SLOT:
            entry["numero"] = str(voucher_count)
        vector.append(entry)
    return vector


def _sum_field(lines: list[dict[str, Any]], key: str) -> Decimal:
    return sum((Decimal(line[key]) for line in lines), ZERO)


def map_sale_payload(doc: SaleDocumentRequest, identity: FiscalIdentity) -> dict[str, Any]:
    lines = [compute_line_amounts(line) for line in doc.lines]
    payments = map_payments(doc.payments)

    uncollected = sum(
        (Decimal(p["importo"]) for p in payments if p["tipo"] in NOT_COLLECTED_SLOTS),
        ZERO,
    )
    discount_total = _sum_field(lines, "scontoLordo")

    return {
        "datiTrasmissione": {"formato": TRANSMISSION_FORMAT},
        "cedentePrestatore": copy.deepcopy(identity.raw),
        "documentoCommerciale": {
            "cfCessionarioCommittente": doc.customer_tax_code or "",
            "flagDocCommPerRegalo": doc.is_gift_document,
            "progressivoCollegato": "",
            "dataOra": to_authority_date(doc.date),
            "multiAttivita": {"codiceAttivita": "", "descAttivita": ""},
            "importoTotaleIva": to_amount(_sum_field(lines, "importoIVA")),
            "scontoTotale": to_amount(discount_total),
            "scontoTotaleLordo": to_amount(discount_total),
            "totaleImponibile": to_amount(_sum_field(lines, "imponibile")),
            "ammontareComplessivo": to_amount(_sum_field(lines, "totale")),
            "totaleNonRiscosso": to_amount(uncollected),
            "elementiContabili": lines,
            "vendita": payments,
            "scontoAbbuono": to_amount(doc.global_discount),
            "importoDetraibileDeducibile": to_amount(doc.deductible_amount),
        },
        "flagIdentificativiModificati": False,
    }


# document-level fields copied verbatim from the authority's stored copy when voiding
_VOID_COPIED_FIELDS = (
    "cfCessionarioCommittente",
    "flagDocCommPerRegalo",
    "progressivoCollegato",
    "dataOra",
    "multiAttivita",
    "importoTotaleIva",
    "scontoTotale",
    "scontoTotaleLordo",
    "totaleImponibile",
    "ammontareComplessivo",
    "totaleNonRiscosso",
    "scontoAbbuono",
    "importoDetraibileDeducibile",
)


def map_void_payload(
    void_request: VoidRequest,
    identity: FiscalIdentity,
    original: AuthorityDocumentDetail,
) -> dict[str, Any]:
    """
    What it does:
    - Builds the void ("annullo") payload for a previously accepted sale.

    Behavior:
    - Carries the original idtrx and a resoAnnullo block (type "A", original date and progressive).
    - Line items and totals are the authority's own (with their idElementoContabile), never recomputed.
    - Never contains a payment vector.
    """
    ref = void_request.original_document

    cedente = copy.deepcopy(identity.raw)
    other = cedente.setdefault("altriDatiIdentificativi", {})
    other["nuovoUtente"] = True
    other["defAliquotaIVA"] = ""

    source = original.raw
    document: dict[str, Any] = {field: copy.deepcopy(source.get(field, "")) for field in _VOID_COPIED_FIELDS}
    document["elementiContabili"] = copy.deepcopy(original.lines)
    document["resoAnnullo"] = {
        "tipologia": "A",
        "dataOra": to_authority_date(ref.date),
        "progressivo": ref.document_progressive,
    }
    document["numeroProgressivo"] = ref.document_progressive

    return {
        "idtrx": ref.transaction_id,
        "datiTrasmissione": {"formato": TRANSMISSION_FORMAT},
        "cedentePrestatore": cedente,
        "documentoCommerciale": document,
        "flagIdentificativiModificati": False,
    }
