from __future__ import annotations

import logging
import re
import sys

from fiscal_receipts.config.settings import settings

_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

SENSITIVE_KEYS = frozenset(
    {
        "password",
        "pin",
        "tax_code",
        "token",
        "cookie",
        "secret",
        "authorization",
        "credentials",
        "encrypted_tax_code",
        "encrypted_password",
        "encrypted_pin",
    }
)

REDACTED = "[REDACTED]"

_KV_PATTERN = re.compile(
    r"\b(" + "|".join(sorted(SENSITIVE_KEYS, key=len, reverse=True)) + r")=([^\s,;]+)",
    re.IGNORECASE,
)


def _coerce_level(value: object) -> int:
    if isinstance(value, str):
        return _LEVELS.get(value.upper().strip(), logging.INFO)
    if isinstance(value, int):
        return value
    return logging.INFO


class RedactingFilter(logging.Filter):
    """
    What it does:
    - Masks sensitive values before a record reaches any handler.

    Behavior:
    - Attributes passed through `extra=` whose name is a sensitive key are replaced by [REDACTED].
    - `key=value` fragments for sensitive keys inside the rendered message are masked too.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for key in SENSITIVE_KEYS:
            if key in record.__dict__:
                setattr(record, key, REDACTED)

        message = record.getMessage()
        masked = _KV_PATTERN.sub(lambda m: f"{m.group(1)}={REDACTED}", message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def get_logger(name: str) -> logging.Logger:
    """Return a stdout logger with the project's format, level from LOG_LEVEL, and redaction."""
    logger = logging.getLogger(name)
    if getattr(logger, "_fiscal_receipts_configured", False):
        return logger

    level = _coerce_level(settings.log_level)
    logger.setLevel(level)

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(RedactingFilter())
    logger.addHandler(handler)

    logger.propagate = False
    setattr(logger, "_fiscal_receipts_configured", True)
    return logger
