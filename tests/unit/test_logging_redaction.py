from __future__ import annotations

import logging

from fiscal_receipts.utils.logging import REDACTED, RedactingFilter, get_logger


def make_record(msg, *args, **extra) -> logging.LogRecord:
    record = logging.LogRecord("test", logging.INFO, __file__, 1, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_sensitive_extra_fields_are_masked():
    record = make_record("login attempt", password="hunter2", pin="123456", business_id=7)

    assert RedactingFilter().filter(record) is True
    assert record.password == REDACTED
    assert record.pin == REDACTED
    assert record.business_id == 7


def test_key_value_fragments_are_masked():
    record = make_record("retry with token=%s cookie=%s for id=%s", "abc123", "JSESSIONID", 42)

    RedactingFilter().filter(record)

    message = record.getMessage()
    assert "abc123" not in message
    assert "JSESSIONID" not in message
    assert f"token={REDACTED}" in message
    assert "id=42" in message


def test_plain_messages_are_untouched():
    record = make_record("Receipt %s accepted", 12)

    RedactingFilter().filter(record)

    assert record.getMessage() == "Receipt 12 accepted"


def test_get_logger_is_configured_once():
    first = get_logger("fiscal-test")
    second = get_logger("fiscal-test")

    assert first is second
    assert len(first.handlers) == 1
    assert any(isinstance(f, RedactingFilter) for f in first.handlers[0].filters)
    assert first.propagate is False
