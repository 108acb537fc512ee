"""
Error taxonomy shared by the portal clients and the receipt lifecycle service.

Every error raised by a portal client is a PortalClientError with a stable `code`,
so callers can branch on the failure mode without parsing messages.
"""

from __future__ import annotations


class PortalClientError(Exception):
    code: str = "PORTAL_CLIENT_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthError(PortalClientError):
    """Wrong credentials or locked account at initial login. Never retried."""

    code = "AUTH_FAILED"

    def __init__(self, message: str = "Authentication failed") -> None:
        super().__init__(message)


class SessionExpiredError(PortalClientError):
    """A session that was valid went stale and re-authentication also failed."""

    code = "SESSION_EXPIRED"

    def __init__(self, message: str = "Session expired and re-authentication failed") -> None:
        super().__init__(message)


class PortalError(PortalClientError):
    """The portal answered with a non-success status or an unusable body."""

    code = "PORTAL_ERROR"

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


class NetworkError(PortalClientError):
    """Transport-level failure (DNS, timeout, connection refused, TLS)."""

    code = "NETWORK_ERROR"

    def __init__(self, cause: BaseException) -> None:
        super().__init__(str(cause) or "Network error")
        self.cause = cause


class NotLoggedInError(RuntimeError):
    """A session-bound method was called before login(). Programmer error."""

    def __init__(self) -> None:
        super().__init__("Not logged in. Call login() first.")
