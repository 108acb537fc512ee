from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from fiscal_receipts.config.paths import env_file_path

_UNSET = object()

DEFAULT_PORTAL_BASE_URL = "https://ivaservizi.agenziaentrate.gov.it"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(env_file_path()),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_env: str = "dev"
    log_level: str = "INFO"

    database_url: str | None = None

    portal_mode: Literal["mock", "real"] = Field(default="mock", alias="PORTAL_MODE")
    portal_base_url: str = Field(default=DEFAULT_PORTAL_BASE_URL, alias="PORTAL_BASE_URL")
    portal_timeout_seconds: float = Field(default=30.0, alias="PORTAL_TIMEOUT_SECONDS")

    # "1:<64 hex>,2:<64 hex>" - every version that may still appear in stored rows
    encryption_keys: str | None = Field(default=None, alias="ENCRYPTION_KEYS")
    encryption_key_version: int = Field(default=1, alias="ENCRYPTION_KEY_VERSION")


def require_database_url(value: object = _UNSET) -> str:
    """
    If `value` is provided (even None), use it. Otherwise fall back to settings.database_url.
    This makes the function unit-testable without depending on a local .env file.
    """
    url = settings.database_url if value is _UNSET else value

    if not isinstance(url, str) or not url.strip():
        raise RuntimeError(
            "DATABASE_URL is not set. Add it to .env (recommended) or set it as an environment variable."
        )

    return url


def parse_encryption_keys(raw: object) -> dict[int, bytes]:
    """
    What it does:
    - Parses ENCRYPTION_KEYS ("<version>:<hex>" pairs separated by commas) into a version -> key map.

    Behavior:
    - Every key must be 64 hex characters (32 bytes) and every version in 1..255.
    - Raises RuntimeError with an actionable message on anything malformed.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise RuntimeError(
            "ENCRYPTION_KEYS is not set. Use '1:<64 hex chars>' (comma-separate extra versions)."
        )

    keys: dict[int, bytes] = {}
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        version_text, sep, hex_key = chunk.partition(":")
        if not sep:
            raise RuntimeError(f"ENCRYPTION_KEYS entry is missing a version prefix: '{version_text[:4]}...'")
        try:
            version = int(version_text)
        except ValueError:
            raise RuntimeError(f"ENCRYPTION_KEYS version is not an integer: '{version_text}'") from None
        if not 1 <= version <= 255:
            raise RuntimeError(f"ENCRYPTION_KEYS version must be 1-255, got {version}")
        hex_key = hex_key.strip()
        if len(hex_key) != 64:
            raise RuntimeError(f"ENCRYPTION_KEYS key for version {version} must be 64 hex characters")
        try:
            keys[version] = bytes.fromhex(hex_key)
        except ValueError:
            raise RuntimeError(f"ENCRYPTION_KEYS key for version {version} is not valid hex") from None

    if not keys:
        raise RuntimeError("ENCRYPTION_KEYS does not contain any key.")
    return keys


settings = Settings()
