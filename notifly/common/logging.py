"""Structured JSON logging with request/message context fields.

`correlation_id` follows one submission through every retry tier, so a
single query over the logs reconstructs the whole delivery chain.
"""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from notifly.common.config import settings


correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")
tenant_id_ctx: ContextVar[str] = ContextVar("tenant_id", default="")


class ContextFilter(logging.Filter):
    """Inject service and correlation identifiers into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.correlation_id = correlation_id_ctx.get()
        record.event_id = event_id_ctx.get()
        record.request_id = request_id_ctx.get()
        record.tenant_id = tenant_id_ctx.get()
        return True


def configure_logging() -> None:
    """Configure root logger once per service process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(correlation_id)s %(event_id)s "
        "%(request_id)s %(tenant_id)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)


logger = logging.getLogger("notifly")
