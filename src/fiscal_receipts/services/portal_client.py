from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol


@dataclass(frozen=True, repr=False)
class PortalCredentials:
    tax_code: str
    password: str
    pin: str

    def __repr__(self) -> str:
        return "PortalCredentials(tax_code=[REDACTED], password=[REDACTED], pin=[REDACTED])"


@dataclass(frozen=True)
class PortalSession:
    token: str = field(repr=False)
    selected_tax_id: str
    created_at: datetime


@dataclass(frozen=True)
class AuthorityErrorItem:
    code: str
    description: str


@dataclass(frozen=True)
class AuthorityResponse:
    success: bool
    transaction_id: str | None
    progressive: str | None
    errors: list[AuthorityErrorItem]
    raw: dict[str, Any]

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> AuthorityResponse:
        return cls(
            success=bool(data.get("esito")),
            transaction_id=_opt_str(data.get("idtrx")),
            progressive=_opt_str(data.get("progressivo")),
            errors=[
                AuthorityErrorItem(
                    code=str(e.get("codice", "")),
                    description=str(e.get("descrizione", "")),
                )
                for e in (data.get("errori") or [])
            ],
            raw=data,
        )


@dataclass(frozen=True)
class FiscalIdentity:
    """The business identity record held by the authority (its "cedentePrestatore" block)."""

    vat_number: str
    tax_code: str
    country_code: str
    raw: dict[str, Any]

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> FiscalIdentity:
        ids = data.get("identificativiFiscali") or {}
        return cls(
            vat_number=str(ids.get("partitaIva") or ""),
            tax_code=str(ids.get("codiceFiscale") or ""),
            country_code=str(ids.get("codicePaese") or "IT"),
            raw=data,
        )


@dataclass(frozen=True)
class AuthorityDocumentDetail:
    """The authority's own stored copy of a submitted document."""

    transaction_id: str
    progressive: str
    lines: list[dict[str, Any]]
    raw: dict[str, Any]

    @property
    def line_ids(self) -> list[str]:
        return [str(line.get("idElementoContabile") or "") for line in self.lines]

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> AuthorityDocumentDetail:
        return cls(
            transaction_id=str(data.get("idtrx") or ""),
            progressive=str(data.get("numeroProgressivo") or ""),
            lines=list(data.get("elementiContabili") or []),
            raw=data,
        )


def _opt_str(value: Any) -> str | None:
    return None if value is None else str(value)


class PortalClient(Protocol):
    """
    What it does:
    - Defines the API the lifecycle service expects from an authority portal client.

    Behavior:
    - login() establishes an authenticated session and returns it.
    - submit_sale()/submit_void() send a mapped payload and return the authority's verdict.
    - get_fiscal_data()/get_document() read authority-held records; they require login().
    - logout() is best-effort and never raises.
    """

    def login(self, creds: PortalCredentials) -> PortalSession: ...

    def submit_sale(self, payload: dict[str, Any]) -> AuthorityResponse: ...

    def submit_void(self, payload: dict[str, Any]) -> AuthorityResponse: ...

    def get_fiscal_data(self) -> FiscalIdentity: ...

    def get_document(self, transaction_id: str) -> AuthorityDocumentDetail: ...

    def logout(self) -> None: ...
