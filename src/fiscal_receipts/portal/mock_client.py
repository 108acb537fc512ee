from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fiscal_receipts.portal.errors import NotLoggedInError
from fiscal_receipts.services.portal_client import (
    AuthorityDocumentDetail,
    AuthorityResponse,
    FiscalIdentity,
    PortalCredentials,
    PortalSession,
)


def mock_vat_number(tax_code: str) -> str:
    """Canned VAT number for the offline portal: the tax code cut or zero-padded to 11 characters."""
    return tax_code.strip().upper()[:11].ljust(11, "0")


class MockPortalClient:
    """
    What it does:
    - Stands in for the authority portal in staging and local runs (PORTAL_MODE=mock).

    Behavior:
    - Runs no HTTP; every submission is accepted with an incrementing idtrx and a
      "DCW<year>/MOCK-<n>" progressive.
    - Enforces the same login() precondition as the real client.
    """

    def __init__(self, *, first_transaction_id: int = 151000000) -> None:
        self.session: PortalSession | None = None
        self._next_transaction_id = first_transaction_id
        self._next_progressive = 1
        self.submitted: list[dict[str, Any]] = []

    def login(self, creds: PortalCredentials) -> PortalSession:
        now = datetime.now(timezone.utc)
        self.session = PortalSession(
            token=f"mock-token-{int(now.timestamp() * 1000)}",
            selected_tax_id=mock_vat_number(creds.tax_code),
            created_at=now,
        )
        return self.session

    def submit_sale(self, payload: dict[str, Any]) -> AuthorityResponse:
        return self._accept(payload)

    def submit_void(self, payload: dict[str, Any]) -> AuthorityResponse:
        return self._accept(payload)

    def _accept(self, payload: dict[str, Any]) -> AuthorityResponse:
        self._require_session()
        self.submitted.append(payload)

        idtrx = str(self._next_transaction_id)
        progressive = f"DCW{datetime.now(timezone.utc).year}/MOCK-{self._next_progressive}"
        self._next_transaction_id += 1
        self._next_progressive += 1

        return AuthorityResponse.from_json(
            {"esito": True, "idtrx": idtrx, "progressivo": progressive, "errori": []}
        )

    def get_fiscal_data(self) -> FiscalIdentity:
        session = self._require_session()
        return FiscalIdentity.from_json(
            {
                "identificativiFiscali": {
                    "codicePaese": "IT",
                    "partitaIva": session.selected_tax_id,
                    "codiceFiscale": "RSSMRA80A01H501A",
                },
                "altriDatiIdentificativi": {
                    "denominazione": "",
                    "nome": "MARIO",
                    "cognome": "ROSSI",
                    "indirizzo": "VIA ROMA",
                    "numeroCivico": "1",
                    "cap": "00100",
                    "comune": "ROMA",
                    "provincia": "RM",
                    "nazione": "IT",
                    "modificati": False,
                    "defAliquotaIVA": "22",
                    "nuovoUtente": False,
                },
                "multiAttivita": [],
                "multiSede": [],
            }
        )

    def get_document(self, transaction_id: str) -> AuthorityDocumentDetail:
        self._require_session()
        return AuthorityDocumentDetail.from_json(
            {
                "idtrx": transaction_id,
                "numeroProgressivo": "",
                "cfCessionarioCommittente": "",
                "flagDocCommPerRegalo": False,
                "progressivoCollegato": "",
                "dataOra": "",
                "multiAttivita": {"codiceAttivita": "", "descAttivita": ""},
                "importoTotaleIva": "0.00",
                "scontoTotale": "0.00",
                "scontoTotaleLordo": "0.00",
                "totaleImponibile": "0.00",
                "ammontareComplessivo": "0.00",
                "totaleNonRiscosso": "0.00",
                "scontoAbbuono": "0.00",
                "importoDetraibileDeducibile": "0.00",
                "elementiContabili": [],
            }
        )

    def logout(self) -> None:
        self.session = None

    def _require_session(self) -> PortalSession:
        if self.session is None:
            raise NotLoggedInError()
        return self.session
