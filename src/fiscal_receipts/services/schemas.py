from __future__ import annotations

from datetime import date as Date
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fiscal_receipts.db.enums import PaymentType, VatCode

ISO_DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


def _check_calendar_date(value: str | None) -> str | None:
    if value is not None:
        Date.fromisoformat(value)
    return value


# ---------- mapper input: the domestic document ----------


class SaleLineRequest(_Frozen):
    description: str = Field(min_length=1, max_length=1000)
    quantity: Decimal = Field(gt=0)
    unit_price_gross: Decimal = Field(ge=0)
    unit_discount: Decimal = Field(default=Decimal("0"), ge=0)
    vat_code: VatCode
    is_gift: bool = False


class PaymentRequest(_Frozen):
    type: PaymentType
    amount: Decimal = Field(ge=0)
    # meal vouchers only
    count: int | None = Field(default=None, ge=0)


class SaleDocumentRequest(_Frozen):
    date: str = Field(pattern=ISO_DATE_PATTERN)
    customer_tax_code: str | None = None
    is_gift_document: bool = False
    lines: list[SaleLineRequest] = Field(min_length=1)
    payments: list[PaymentRequest] = Field(min_length=1)
    global_discount: Decimal = Field(default=Decimal("0"), ge=0)
    deductible_amount: Decimal = Field(default=Decimal("0"), ge=0)

    @field_validator("date")
    @classmethod
    def real_calendar_date(cls, value):
        return _check_calendar_date(value)


class OriginalDocumentRef(_Frozen):
    transaction_id: str = Field(min_length=1)
    document_progressive: str = Field(min_length=1)
    date: str = Field(pattern=ISO_DATE_PATTERN)

    @field_validator("date")
    @classmethod
    def real_calendar_date(cls, value):
        return _check_calendar_date(value)


class VoidRequest(_Frozen):
    idempotency_key: str = Field(min_length=1, max_length=64)
    original_document: OriginalDocumentRef


# ---------- service input: what the till sends ----------


class CartLine(_Frozen):
    description: str = Field(min_length=1, max_length=1000)
    quantity: Decimal = Field(gt=0)
    gross_unit_price: Decimal = Field(ge=0)
    vat_code: VatCode


class EmitReceiptInput(_Frozen):
    business_id: int
    idempotency_key: str = Field(min_length=1, max_length=64)
    lines: list[CartLine] = Field(min_length=1)
    payment_method: PaymentType = PaymentType.CASH
    # defaults to today when omitted
    date: str | None = Field(default=None, pattern=ISO_DATE_PATTERN)

    @field_validator("date")
    @classmethod
    def real_calendar_date(cls, value):
        return _check_calendar_date(value)


class VoidReceiptInput(_Frozen):
    business_id: int
    document_id: int
    idempotency_key: str = Field(min_length=1, max_length=64)


class CredentialsInput(_Frozen):
    business_id: int
    tax_code: str = Field(min_length=16, max_length=16)
    password: str = Field(min_length=1, repr=False)
    pin: str = Field(min_length=6, repr=False)

    @field_validator("tax_code", "pin", mode="before")
    @classmethod
    def _strip(cls, value: object) -> object:
        return value.strip() if isinstance(value, str) else value

    @field_validator("tax_code")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()
