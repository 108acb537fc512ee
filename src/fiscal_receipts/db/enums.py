from __future__ import annotations

from enum import StrEnum


class DocumentKind(StrEnum):
    SALE = "SALE"
    VOID = "VOID"


class DocumentStatus(StrEnum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    VOID_ACCEPTED = "VOID_ACCEPTED"
    REJECTED = "REJECTED"
    ERROR = "ERROR"


TERMINAL_STATUSES = frozenset(
    {
        DocumentStatus.ACCEPTED,
        DocumentStatus.VOID_ACCEPTED,
        DocumentStatus.REJECTED,
        DocumentStatus.ERROR,
    }
)


class VatCode(StrEnum):
    VAT_4 = "4"
    VAT_5 = "5"
    VAT_10 = "10"
    VAT_22 = "22"
    N1 = "N1"
    N2 = "N2"
    N3 = "N3"
    N4 = "N4"
    N5 = "N5"
    N6 = "N6"
    # agricultural compensation percentages
    AGR_2 = "2"
    AGR_6_4 = "6.4"
    AGR_7 = "7"
    AGR_7_3 = "7.3"
    AGR_7_5 = "7.5"
    AGR_7_65 = "7.65"
    AGR_7_95 = "7.95"
    AGR_8_3 = "8.3"
    AGR_8_5 = "8.5"
    AGR_8_8 = "8.8"
    AGR_9_5 = "9.5"
    AGR_12_3 = "12.3"

    @property
    def is_nature(self) -> bool:
        return self.value.startswith("N")


class PaymentType(StrEnum):
    CASH = "CASH"
    ELECTRONIC = "ELECTRONIC"
    MEAL_VOUCHER = "MEAL_VOUCHER"
    NOT_COLLECTED_INVOICE = "NOT_COLLECTED_INVOICE"
    NOT_COLLECTED_SERVICE = "NOT_COLLECTED_SERVICE"
    NOT_COLLECTED_CREDIT = "NOT_COLLECTED_CREDIT"


__all__ = ["DocumentKind", "DocumentStatus", "PaymentType", "TERMINAL_STATUSES", "VatCode"]
