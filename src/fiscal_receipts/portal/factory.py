from __future__ import annotations

from fiscal_receipts.config.settings import settings
from fiscal_receipts.portal.http_client import PortalSessionClient
from fiscal_receipts.portal.mock_client import MockPortalClient
from fiscal_receipts.services.portal_client import PortalClient


def create_portal_client(mode: str | None = None) -> PortalClient:
    """
    Returns a fresh portal client for one login/submission cycle.

    `mode` defaults to PORTAL_MODE: "mock" (no network) or "real" (authority portal over HTTP).
    """
    mode = mode or settings.portal_mode
    if mode == "mock":
        return MockPortalClient()
    if mode == "real":
        return PortalSessionClient(
            base_url=settings.portal_base_url,
            timeout=settings.portal_timeout_seconds,
        )
    raise ValueError(f"Unknown PORTAL_MODE '{mode}'. Allowed: ['mock', 'real']")
