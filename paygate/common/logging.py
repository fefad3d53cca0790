"""JSON logs tagged with the payment event being processed.

Each record carries the rail, event id and subscription id bound by the
ingestor that is handling it, plus the active OpenTelemetry trace id.
"""

import logging
import sys
from collections.abc import Callable
from contextvars import ContextVar

from opentelemetry import trace
from pythonjsonlogger.json import JsonFormatter

from paygate.common.config import settings


CORRELATION_FIELDS = ("rail", "event_id", "subscription_id")

_fields: dict[str, ContextVar[str]] = {name: ContextVar(name, default="") for name in CORRELATION_FIELDS}

# SDK and scheduler loggers that report every request or job run at INFO.
QUIET_LOGGERS = ("httpx", "httpcore", "stripe", "web3", "apscheduler")


def bind(**fields) -> Callable[[], None]:
    """Set correlation fields for the current task; call the result to restore them."""

    tokens = [(_fields[name], _fields[name].set(str(value))) for name, value in fields.items() if value is not None]

    def reset() -> None:
        for var, token in reversed(tokens):
            var.reset(token)

    return reset


def current_fields() -> dict[str, str]:
    return {name: var.get() for name, var in _fields.items()}


def _trace_id() -> str:
    span_context = trace.get_current_span().get_span_context()
    return format(span_context.trace_id, "032x") if span_context.is_valid else ""


class CorrelationFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = _trace_id()
        for name, value in current_fields().items():
            setattr(record, name, value)
        return True


def configure_logging(level: str | None = None) -> None:
    """Route every logger through one stdout JSON handler."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationFilter())
    handler.setFormatter(
        JsonFormatter(
            " ".join(
                f"%({name})s"
                for name in ("asctime", "levelname", "name", "service_name", "trace_id", *CORRELATION_FIELDS, "message")
            ),
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger("paygate")
