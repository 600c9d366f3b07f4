"""Delivery context injected into log records."""

import logging

from loyalty.common.logging import ContextFilter, account_id_ctx, bind_delivery_context


def _record() -> logging.LogRecord:
    return logging.LogRecord("loyalty", logging.INFO, __file__, 1, "points_awarded", None, None)


def test_delivery_context_is_attached_and_reset():
    account_id_ctx.set("acct-from-previous-delivery")
    bind_delivery_context("trace-1", "webhook-1")

    record = _record()
    assert ContextFilter().filter(record) is True
    assert record.trace_id == "trace-1"
    assert record.webhook_id == "webhook-1"
    assert record.account_id == ""
    assert record.service_name


def test_missing_webhook_id_is_blank():
    bind_delivery_context("trace-2")
    record = _record()
    ContextFilter().filter(record)
    assert record.webhook_id == ""
