from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Generic, TypeVar

from pydantic import ValidationError

from fiscal_receipts.portal.errors import (
    AuthError,
    NetworkError,
    PortalError,
    SessionExpiredError,
)
from fiscal_receipts.utils.errors import (
    CipherError,
    ConflictError,
    CredentialsError,
    NotFoundError,
)

T = TypeVar("T")


class ErrorKind(StrEnum):
    AUTH = "AUTH"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    PORTAL = "PORTAL"
    NETWORK = "NETWORK"
    CIPHER = "CIPHER"
    CREDENTIALS = "CREDENTIALS"
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    CONFLICT = "CONFLICT"
    IN_PROGRESS = "IN_PROGRESS"
    PREVIOUS_ATTEMPT_FAILED = "PREVIOUS_ATTEMPT_FAILED"
    INCONSISTENT_STATE = "INCONSISTENT_STATE"
    REJECTED = "REJECTED"
    INTERNAL = "INTERNAL"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    ok: bool = True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    detail: str
    ok: bool = False


Result = Ok[T] | Err

# Order matters: subclasses before their bases.
_KIND_BY_EXCEPTION: tuple[tuple[type[BaseException], ErrorKind], ...] = (
    (AuthError, ErrorKind.AUTH),
    (SessionExpiredError, ErrorKind.SESSION_EXPIRED),
    (PortalError, ErrorKind.PORTAL),
    (NetworkError, ErrorKind.NETWORK),
    (CipherError, ErrorKind.CIPHER),
    (CredentialsError, ErrorKind.CREDENTIALS),
    (ValidationError, ErrorKind.VALIDATION),
    (NotFoundError, ErrorKind.NOT_FOUND),
    (ConflictError, ErrorKind.CONFLICT),
)


def kind_of(exc: BaseException) -> ErrorKind | None:
    for exc_type, kind in _KIND_BY_EXCEPTION:
        if isinstance(exc, exc_type):
            return kind
    return None


def attempt(fn: Callable[..., T], *args, **kwargs) -> Result[T]:
    """
    What it does:
    - Calls `fn` and turns the known failure taxonomy into an Err value.

    Behavior:
    - Returns Ok(value) on success.
    - Known errors (portal, cipher, validation, domain) become Err(kind, str(exc)).
    - Anything else propagates unchanged: programmer errors are not results.
    """
    try:
        return Ok(fn(*args, **kwargs))
    except Exception as exc:
        kind = kind_of(exc)
        if kind is None:
            raise
        return Err(kind=kind, detail=str(exc))
