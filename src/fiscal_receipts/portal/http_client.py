"""
http_client.py

What this module does
- Implements the authority portal client over plain HTTP (requests), satisfying the `PortalClient` protocol.
- Reproduces the portal's human-oriented login handshake without a browser:
  landing page -> credential POST -> bootstrap page token -> working-entity selection -> readiness check.
- Between the token and the entity selection it opens the API gateway session (`/dp/api` ping and the
  DatiOpzioni portlet POST) and reads the business VAT number from the portal (`gestori/me`, or
  `dati/fiscali` for accounts that are not managers).

Behavior summary
- `login(creds)`: five sequential phases; returns a PortalSession.
- `submit_sale(payload)` / `submit_void(payload)`: JSON POST with browser-like headers; on 401 the full
  login is replayed once with the last credentials and the submission retried exactly once.
- `get_fiscal_data()`, `get_document(idtrx)`: authenticated reads.
- `logout()`: best-effort cleanup, never raises, always forgets the session locally.

Cookies live only in this instance's CookieJar; redirects are followed by hand so that every hop's
Set-Cookie lands in the jar. An instance is one logical session: do not share it across threads.
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import replace
from datetime import datetime, timezone
from http import cookiejar
from typing import Any
from urllib.parse import urljoin

import requests

from fiscal_receipts.config.settings import DEFAULT_PORTAL_BASE_URL
from fiscal_receipts.db.enums import DocumentKind
from fiscal_receipts.portal.cookie_jar import CookieJar
from fiscal_receipts.portal.errors import (
    AuthError,
    NetworkError,
    NotLoggedInError,
    PortalError,
    SessionExpiredError,
)
from fiscal_receipts.services.portal_client import (
    AuthorityDocumentDetail,
    AuthorityResponse,
    FiscalIdentity,
    PortalCredentials,
    PortalSession,
)
from fiscal_receipts.utils.logging import get_logger

log = get_logger("portal-http")

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/145.0.0.0 Safari/537.36"
)

LANDING_PATH = "/portale/web/guest/home"
LOGIN_PATH = (
    "/portale/home?p_p_id=58&p_p_lifecycle=1&p_p_state=normal&p_p_mode=view"
    "&p_p_col_id=column-1&p_p_col_pos=4&p_p_col_count=6&_58_struts_action=%2Flogin%2Flogin"
)
AUTHENTICATED_AREA_MARKER = "/portale/c"
BOOTSTRAP_PATH = "/portale/web/guest/home"
SELECT_ENTITY_PATH = "/portale/scelta-utenza-lavoro"
GATEWAY_PING_PATH = "/dp/api"
ACTIVATE_SESSION_PATH = (
    "/portale/home?p_p_id=DatiOpzioni_WAR_DatiOpzioniportlet&p_p_lifecycle=2&p_p_state=normal"
    "&p_p_mode=view&p_p_cacheability=cacheLevelPage&p_p_col_id=column-2&p_p_col_count=10"
)
MANAGER_PROFILE_PATH = "/ser/api/portale/v1/gestori/me/"
READINESS_PATH = "/ser/api/fatture/v1/ul/me/adesione/stato/"
DOCUMENTS_PATH = "/ser/api/documenti/v1/doc/documenti/"
FISCAL_DATA_PATH = "/ser/api/documenti/v1/doc/documenti/dati/fiscali"
LOGOUT_PATHS = (
    "/cons/opt-services/logout",
    "/cons/cons-services/logout",
    "/cons/cons-other-services/logout",
    "/cons/mass-services/logout",
    "/portale/c/portal/logout",
)

MAX_REDIRECT_HOPS = 20

_AUTH_TOKEN_PATTERN = re.compile(r"Liferay\.authToken\s*=\s*['\"]([^'\"]+)['\"]")


def extract_auth_token(html: str) -> str | None:
    """
    Finds the portal session token embedded in the bootstrap page's inline script.

    The page format is owned by the portal and undocumented: keep this the only place that knows it.
    """
    match = _AUTH_TOKEN_PATTERN.search(html or "")
    return match.group(1) if match else None


class PortalSessionClient:
    submit_headers: dict[str, str] = {
        "Accept": "application/json, text/plain, */*",
        "Content-Type": "application/json;charset=UTF-8",
        "User-Agent": USER_AGENT,
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "deny",
        "X-XSS-Protection": "1; mode=block",
        "Strict-Transport-Security": "max-age=16070400; includeSubDomains",
    }

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_PORTAL_BASE_URL,
        timeout: float = 30.0,
        http: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.jar = CookieJar()
        self.http = http if http is not None else requests.Session()
        cookies = getattr(self.http, "cookies", None)
        if cookies is not None and hasattr(cookies, "set_policy"):
            # requests keeps no cookies of its own: the CookieJar is the only store
            cookies.set_policy(cookiejar.DefaultCookiePolicy(allowed_domains=[]))

        self.session: PortalSession | None = None
        self._credentials: PortalCredentials | None = None

    # ---------- HTTP foundation ----------

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _request(
        self,
        method: str,
        url: str,
        *,
        data: Any = None,
        headers: dict[str, str] | None = None,
    ) -> requests.Response:
        """Single HTTP exchange: sends the jar, never follows redirects, stores Set-Cookie, wraps transport errors."""
        merged = {"User-Agent": USER_AGENT}
        merged.update(headers or {})
        cookie_value = self.jar.header_value()
        if cookie_value:
            merged["Cookie"] = cookie_value

        try:
            response = self.http.request(
                method,
                url,
                data=data,
                headers=merged,
                allow_redirects=False,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise NetworkError(exc) from exc

        self.jar.apply_response(response)
        return response

    def _get(self, url: str) -> requests.Response:
        """GET that follows redirects hop by hop so intermediate cookies are kept."""
        for _ in range(MAX_REDIRECT_HOPS):
            response = self._request("GET", url)
            if not response.is_redirect:
                return response
            location = response.headers.get("Location")
            if not location:
                return response
            url = urljoin(self.base_url + "/", location)

        raise PortalError(302, f"Redirect chain exceeded {MAX_REDIRECT_HOPS} hops")

    def _require_session(self) -> PortalSession:
        if self.session is None:
            raise NotLoggedInError()
        return self.session

    @staticmethod
    def _ensure_ok(response: requests.Response, what: str) -> None:
        if not response.ok:
            raise PortalError(response.status_code, f"{what} failed with status {response.status_code}")

    @staticmethod
    def _json(response: requests.Response, what: str) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            raise PortalError(response.status_code, f"{what} returned a non-JSON body") from None
        if not isinstance(body, dict):
            raise PortalError(response.status_code, f"{what} returned an unexpected JSON shape")
        return body

    # ---------- login phases ----------

    def _warm_jar(self) -> None:
        self._get(self._url(LANDING_PATH))

    def _post_credentials(self, creds: PortalCredentials) -> None:
        form = {
            "_58_saveLastPath": "false",
            "_58_redirect": "",
            "_58_doActionAfterLogin": "false",
            "_58_login": creds.tax_code,
            "_58_password": creds.password,
            "_58_pin": creds.pin,
            "ricorda-cf": "on",
        }
        response = self._request(
            "POST",
            self._url(LOGIN_PATH),
            data=form,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Referer": self._url(LANDING_PATH),
            },
        )

        location = response.headers.get("Location") or ""
        if AUTHENTICATED_AREA_MARKER not in location:
            raise AuthError("Login failed: invalid credentials or account locked")

        self._get(urljoin(self.base_url + "/", location))

    def _fetch_token(self) -> str:
        response = self._get(self._url(BOOTSTRAP_PATH))
        self._ensure_ok(response, "Bootstrap page")
        token = extract_auth_token(response.text)
        if not token:
            raise PortalError(response.status_code, "Session token not found in bootstrap page")
        return token

    def _select_entity(self, token: str, tax_id: str) -> None:
        response = self._request(
            "POST",
            f"{self._url(SELECT_ENTITY_PATH)}?p_auth={token}",
            data={"sceltaincarico": tax_id, "tipoincaricante": "incDiretto"},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        # the portal answers the form post with a redirect back to the home page
        if not (response.ok or response.is_redirect):
            raise PortalError(response.status_code, f"Entity selection failed with status {response.status_code}")

    def _open_gateway(self) -> None:
        """Every /ser/api/* call answers 401 until the gateway ping has been made in this session."""
        self._request("GET", f"{self._url(GATEWAY_PING_PATH)}?v={int(time.time() * 1000)}")
        self._request(
            "POST",
            self._url(ACTIVATE_SESSION_PATH),
            data={"_DatiOpzioni_WAR_DatiOpzioniportlet_reload": "false"},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

    def _fetch_vat_number(self) -> str:
        """
        What it does:
        - Reads the business VAT number the portal holds for the logged-in user.

        Behavior:
        - Managers get it from the `gestori/me` profile (`anagrafica.piva`).
        - A 404 there (users who are not managers) falls back to the fiscal data record.
        - Any other failure, or a body without the number, -> PortalError.
        """
        response = self._request("GET", self._url(MANAGER_PROFILE_PATH))
        if response.status_code == 404:
            response = self._request("GET", self._url(FISCAL_DATA_PATH))
            self._ensure_ok(response, "Fiscal data fetch")
            vat_number = FiscalIdentity.from_json(self._json(response, "Fiscal data fetch")).vat_number
        else:
            self._ensure_ok(response, "Manager profile fetch")
            profile = self._json(response, "Manager profile fetch").get("anagrafica") or {}
            vat_number = str(profile.get("piva") or "")

        if not vat_number:
            raise PortalError(response.status_code, "VAT number not found in the portal profile")
        return vat_number

    def _check_ready(self) -> None:
        response = self._request("GET", self._url(READINESS_PATH))
        self._ensure_ok(response, "Session readiness check")

    def _authenticate(self, creds: PortalCredentials) -> PortalSession:
        self.jar.clear()
        self._warm_jar()
        self._post_credentials(creds)
        token = self._fetch_token()
        self._open_gateway()
        tax_id = self._fetch_vat_number()
        self._select_entity(token, tax_id)
        self._check_ready()
        log.info(f"Portal login completed ({self.jar})")
        return PortalSession(
            token=token,
            selected_tax_id=tax_id,
            created_at=datetime.now(timezone.utc),
        )

    # ---------- public API ----------

    def login(self, creds: PortalCredentials) -> PortalSession:
        self._credentials = creds
        self.session = None
        self.session = self._authenticate(creds)
        return self.session

    def submit_sale(self, payload: dict[str, Any]) -> AuthorityResponse:
        return self.submit_document(DocumentKind.SALE, payload)

    def submit_void(self, payload: dict[str, Any]) -> AuthorityResponse:
        return self.submit_document(DocumentKind.VOID, payload)

    def submit_document(self, kind: DocumentKind, payload: dict[str, Any]) -> AuthorityResponse:
        """
        What it does:
        - POSTs a mapped payload to the document endpoint.

        Behavior:
        - 401 -> full re-login with the credentials of the last login(), then exactly one retry.
        - Re-login failure or a second 401 -> SessionExpiredError (never a third attempt).
        - Any other non-2xx -> PortalError carrying the status code.
        """
        self._require_session()
        body = json.dumps(payload)

        response = self._post_document(body)
        if response.status_code == 401:
            log.warning(f"{kind} submission hit an expired session; re-authenticating once")
            if self._credentials is None:
                raise SessionExpiredError()
            try:
                self.session = self._authenticate(self._credentials)
            except (AuthError, PortalError, NetworkError) as exc:
                raise SessionExpiredError() from exc

            response = self._post_document(body)
            if response.status_code == 401:
                raise SessionExpiredError()

        self._ensure_ok(response, f"{kind} submission")
        result = AuthorityResponse.from_json(self._json(response, f"{kind} submission"))
        log.info(f"{kind} submission answered: success={result.success} idtrx={result.transaction_id}")
        return result

    def _post_document(self, body: str) -> requests.Response:
        return self._request(
            "POST",
            f"{self._url(DOCUMENTS_PATH)}?v={int(time.time() * 1000)}",
            data=body.encode("utf-8"),
            headers={
                **self.submit_headers,
                "Origin": self.base_url,
                "Referer": f"{self.base_url}/ser/documenticommercialionline/",
            },
        )

    def get_fiscal_data(self) -> FiscalIdentity:
        session = self._require_session()
        response = self._request("GET", self._url(FISCAL_DATA_PATH))
        self._ensure_ok(response, "Fiscal data fetch")
        identity = FiscalIdentity.from_json(self._json(response, "Fiscal data fetch"))

        if identity.vat_number and identity.vat_number != session.selected_tax_id:
            self.session = replace(session, selected_tax_id=identity.vat_number)
        return identity

    def get_document(self, transaction_id: str) -> AuthorityDocumentDetail:
        self._require_session()
        response = self._request("GET", self._url(f"{DOCUMENTS_PATH}{transaction_id}/"))
        self._ensure_ok(response, f"Document {transaction_id} fetch")
        return AuthorityDocumentDetail.from_json(self._json(response, f"Document {transaction_id} fetch"))

    def logout(self) -> None:
        for path in LOGOUT_PATHS:
            try:
                self._request("GET", self._url(path))
            except NetworkError as exc:
                log.debug(f"Logout endpoint {path} unreachable: {exc}")
        self.session = None
        self._credentials = None
        self.jar.clear()
