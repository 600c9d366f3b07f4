"""JSON logs for the loyalty service.

Every record carries the delivery it belongs to: `trace_id` (caller's
correlation id or a fresh uuid), `webhook_id` (the platform's delivery id)
and `account_id` once the ledger has resolved the account. Code logs in
`event_name key=value` form and never formats these ids itself.
"""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from loyalty.common.config import settings


LOG_FORMAT = "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(webhook_id)s %(account_id)s %(message)s"

trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
webhook_id_ctx: ContextVar[str] = ContextVar("webhook_id", default="")
account_id_ctx: ContextVar[str] = ContextVar("account_id", default="")


def bind_delivery_context(trace_id: str, webhook_id: str | None = None) -> None:
    """Start a fresh log context for one inbound delivery."""

    trace_id_ctx.set(trace_id)
    webhook_id_ctx.set(webhook_id or "")
    account_id_ctx.set("")


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.webhook_id = webhook_id_ctx.get()
        record.account_id = account_id_ctx.get()
        return True


def configure_logging() -> None:
    """Send JSON records to stdout at `LOG_LEVEL`; safe to call twice."""

    context_filter = ContextFilter()
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(context_filter)
    handler.setFormatter(JsonFormatter(LOG_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    root.filters = [context_filter]
    root.setLevel(settings.log_level)


logger = logging.getLogger("loyalty")
