"""
Tests for structured logging helpers.
"""

import logging

from libsearch.util.logging import StructuredLogger, sanitize_details


def test_log_operation_format(caplog):
    log = StructuredLogger("libsearch.test_format")
    with caplog.at_level(logging.INFO, logger="libsearch.test_format"):
        log.log_operation("cache.load", "success", {"docs": 3})

    assert "Operation: cache.load, Status: success, Details: {'docs': 3}" in caplog.text


def test_log_search_truncates_query(caplog):
    log = StructuredLogger("libsearch.test_search")
    with caplog.at_level(logging.INFO, logger="libsearch.test_search"):
        log.log_search("semantic", "x" * 80, 5, top_score=0.9)

    assert "x" * 50 + "..." in caplog.text
    assert "x" * 51 not in caplog.text


def test_rate_limit_logged_as_warning(caplog):
    log = StructuredLogger("libsearch.test_rate")
    with caplog.at_level(logging.INFO, logger="libsearch.test_rate"):
        log.log_rate_limit(batch_index=2, attempt=1, max_retries=5, wait_sec=30.0)

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert "'attempt': '1/5'" in record.getMessage()


def test_sanitize_details_redacts_secrets():
    details = sanitize_details({"client_secret": "s3cret", "model": "m", "body": "y" * 150})

    assert details["client_secret"] == "[REDACTED]"
    assert details["model"] == "m"
    assert len(details["body"]) == 100
