"""Structured JSON logging; every record carries the request's correlation ids."""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from rcmpay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
tenant_id_ctx: ContextVar[str] = ContextVar("tenant_id", default="")
intent_id_ctx: ContextVar[str] = ContextVar("intent_id", default="")

CONTEXT_FIELDS = {
    "trace_id": trace_id_ctx,
    "tenant_id": tenant_id_ctx,
    "intent_id": intent_id_ctx,
}


class ContextFilter(logging.Filter):
    """Copy the service name and context variables onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for name, var in CONTEXT_FIELDS.items():
            setattr(record, name, var.get())
        return True


def configure_logging(level: str | None = None) -> None:
    """Route the root logger to stdout as JSON lines. Safe to call twice."""

    fields = ("asctime", "levelname", "name", "service_name", *CONTEXT_FIELDS, "message")
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(
        JsonFormatter(
            " ".join(f"%({field})s" for field in fields),
            rename_fields={"asctime": "ts", "levelname": "level"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    # Request counts and latency come from the metrics middleware.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


logger = logging.getLogger("rcmpay")
