"""Tests for the JSON log formatter.

**Feature: paysub, Property: Structured logging**
**Validates: StructuredFormatter context promotion and secret masking**
"""

import json
import logging
import sys

from hypothesis import given, settings, strategies as st

from paysub.core.logging import StructuredFormatter, clear_correlation_id, mask, set_correlation_id


def make_record(msg: str = "settled", exc_info=None, **extra) -> logging.LogRecord:
    record = logging.LogRecord("paysub.test", logging.INFO, __file__, 10, msg, None, exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    """**Validates: StructuredFormatter.format**"""

    def test_payment_context_is_top_level(self) -> None:
        set_correlation_id("cid-1")
        try:
            line = StructuredFormatter().format(
                make_record(merchant_transaction_id="TXN_1", attempt=2)
            )
        finally:
            clear_correlation_id()

        entry = json.loads(line)
        assert entry["merchant_transaction_id"] == "TXN_1"
        assert entry["correlation_id"] == "cid-1"
        assert entry["extra"] == {"attempt": 2}
        assert "source" not in entry

    @given(secret=st.text(min_size=5, max_size=40))
    @settings(max_examples=50)
    def test_tokens_never_appear_in_full(self, secret: str) -> None:
        """*For any* stored token, the log line keeps only its last four characters."""
        entry = json.loads(StructuredFormatter().format(make_record(registration_id=secret)))

        assert entry["extra"]["registration_id"] == "****" + secret[-4:]

    def test_short_secret_is_fully_masked(self) -> None:
        assert mask("abc") == "****"

    def test_exception_details(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            exc_info = sys.exc_info()

        record = make_record(exc_info=exc_info)
        record.levelno, record.levelname = logging.ERROR, "ERROR"
        entry = json.loads(StructuredFormatter(include_stack_trace=False).format(record))

        assert entry["exception"] == {"type": "ValueError", "message": "boom"}
        assert entry["source"].endswith(":10")
