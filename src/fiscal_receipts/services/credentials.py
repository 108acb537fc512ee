from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from pydantic import ValidationError

from fiscal_receipts.db.models import PortalCredentialRecord
from fiscal_receipts.db.repositories.businesses import BusinessRepository
from fiscal_receipts.db.repositories.credentials import PortalCredentialRepository
from fiscal_receipts.portal.factory import create_portal_client
from fiscal_receipts.security.cipher import KeyRing, decrypt_with, encrypt_with
from fiscal_receipts.services.portal_client import PortalClient, PortalCredentials
from fiscal_receipts.services.schemas import CredentialsInput
from fiscal_receipts.utils.errors import CipherError, CredentialsError
from fiscal_receipts.utils.logging import get_logger
from fiscal_receipts.utils.results import Err, ErrorKind, Ok, Result, attempt

log = get_logger("credentials")

# field -> message shown to the operator when validation fails
_FIELD_MESSAGES = {
    "tax_code": "Invalid tax code (16 characters).",
    "password": "Portal password is required.",
    "pin": "Invalid portal PIN (at least 6 digits).",
}

_VERIFY_MESSAGES = {
    ErrorKind.AUTH: "Verification failed. Check the portal credentials.",
    ErrorKind.NETWORK: "The tax authority portal is unreachable. Try again later.",
}
_VERIFY_FALLBACK = "Verification could not be completed. Try again later."


def load_portal_credentials(record: PortalCredentialRecord, key_ring: KeyRing) -> PortalCredentials:
    """
    Decrypts a stored record into login credentials.

    The result lives only as long as one login cycle: never persist or log it.
    """
    if record.key_version not in key_ring.keys:
        raise CipherError(f"No key configured for credential key version {record.key_version}")
    return PortalCredentials(
        tax_code=decrypt_with(key_ring, record.encrypted_tax_code),
        password=decrypt_with(key_ring, record.encrypted_password),
        pin=decrypt_with(key_ring, record.encrypted_pin),
    )


def require_verified_credentials(session, business_id: int) -> PortalCredentialRecord:
    """Returns the business' credential record, raising CredentialsError if it is missing or unverified."""
    record = PortalCredentialRepository(session).get_by_business(business_id)
    if record is None:
        raise CredentialsError("Portal credentials not found. Complete the business setup.")
    if record.verified_at is None:
        raise CredentialsError("Portal credentials are not verified. Verify them in the settings.")
    return record


@dataclass(frozen=True)
class CredentialsService:
    """
    What it does:
    - Onboards the operator's portal credentials: save, verify with a test login, rotate encryption keys.

    Behavior:
    - Secrets are encrypted under the key ring's active version before they reach the DB.
    - Every public method returns a Result; failures carry operator-safe messages.
    - Flushes only; commit/rollback belong to the caller's session context manager.
    """

    key_ring: KeyRing
    portal_factory: Callable[[], PortalClient] = create_portal_client

    def save_credentials(
        self,
        session,
        user_id: str,
        business_id: int,
        tax_code: str,
        password: str,
        pin: str,
    ) -> Result[int]:
        try:
            data = CredentialsInput(business_id=business_id, tax_code=tax_code, password=password, pin=pin)
        except ValidationError as exc:
            field = str(exc.errors()[0]["loc"][0])
            return Err(ErrorKind.VALIDATION, _FIELD_MESSAGES.get(field, "Invalid credentials data."))

        if not BusinessRepository(session).is_owned_by(business_id, user_id):
            return Err(ErrorKind.FORBIDDEN, "Not authorized.")

        record = PortalCredentialRepository(session).upsert(
            business_id=data.business_id,
            encrypted_tax_code=encrypt_with(self.key_ring, data.tax_code),
            encrypted_password=encrypt_with(self.key_ring, data.password),
            encrypted_pin=encrypt_with(self.key_ring, data.pin),
            key_version=self.key_ring.active_version,
        )
        log.info(f"Stored portal credentials for business {business_id} (key v{record.key_version})")
        return Ok(record.id)

    def verify_credentials(self, session, user_id: str, business_id: int) -> Result[int]:
        """
        What it does:
        - Proves the stored credentials work with one login/logout cycle, then marks them verified.

        Behavior:
        - A failed login leaves verified_at untouched and returns a generic message.
        - logout() is attempted whenever a client was created.
        """
        if not BusinessRepository(session).is_owned_by(business_id, user_id):
            return Err(ErrorKind.FORBIDDEN, "Not authorized.")

        repo = PortalCredentialRepository(session)
        record = repo.get_by_business(business_id)
        if record is None:
            return Err(ErrorKind.CREDENTIALS, "Portal credentials not found.")

        loaded = attempt(load_portal_credentials, record, self.key_ring)
        if isinstance(loaded, Err):
            log.error(f"Credential decryption failed for business {business_id}: {loaded.detail}")
            return Err(ErrorKind.CIPHER, "Stored credentials cannot be read. Save them again.")

        portal = self.portal_factory()
        try:
            login = attempt(portal.login, loaded.value)
        finally:
            portal.logout()
        if isinstance(login, Err):
            log.error(f"Credential verification failed for business {business_id}: {login.kind}")
            return Err(login.kind, _VERIFY_MESSAGES.get(login.kind, _VERIFY_FALLBACK))

        repo.mark_verified(record)
        log.info(f"Portal credentials verified for business {business_id}")
        return Ok(record.id)

    def reencrypt_credentials(self, session) -> int:
        """
        Re-encrypts every record not on the active key version and returns how many changed.

        Run it while the old version is still in the key ring; retire the old key afterwards.
        """
        repo = PortalCredentialRepository(session)
        count = 0
        for record in repo.list_not_on_version(self.key_ring.active_version):
            creds = load_portal_credentials(record, self.key_ring)
            repo.replace_envelopes(
                record,
                encrypted_tax_code=encrypt_with(self.key_ring, creds.tax_code),
                encrypted_password=encrypt_with(self.key_ring, creds.password),
                encrypted_pin=encrypt_with(self.key_ring, creds.pin),
                key_version=self.key_ring.active_version,
            )
            count += 1

        log.info(f"Re-encrypted {count} credential record(s) to key v{self.key_ring.active_version}")
        return count
