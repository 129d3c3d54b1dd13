"""
Restaurant Payments Core - Structured JSON Logging

One JSON object per line in production, plain text in development.

Reconciliation code logs audit events with `extra=`; the reconciliation
keys (transaction, order, actor, event) are lifted to the top level of the
JSON record so a single transfer can be followed across webhook, poller
and manual-match logs. Anything else passed through `extra=` is kept
under "extra", with secrets masked.

Request context (request id, operator) lives in context variables, so
concurrent requests on one event loop never see each other's ids.
"""

import json
import logging
import os
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# Attributes every LogRecord carries; everything else came from extra=
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "request_id", "operator_id"}

# Promoted to top-level keys of the JSON record
RECONCILIATION_FIELDS = ("event", "transaction_id", "order_number", "actor")

_MASKED_FIELDS = ("token", "secret", "api_key", "apikey", "authorization", "password")

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_operator_id: ContextVar[Optional[str]] = ContextVar("operator_id", default=None)


def _mask(key: str, value: Any) -> Any:
    if any(marker in key.lower() for marker in _MASKED_FIELDS):
        return "[REDACTED]"
    return value


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON for log aggregation."""

    def __init__(self, service_name: str = "restaurant-payments"):
        super().__init__()
        self.service_name = service_name
        self.environment = os.environ.get("ENVIRONMENT", "development")

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
            "request_id": getattr(record, "request_id", None),
            "operator_id": getattr(record, "operator_id", None),
        }

        extra = {
            key: _mask(key, value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS
        }
        for field in RECONCILIATION_FIELDS:
            if field in extra:
                entry[field] = extra.pop(field)
        if extra:
            entry["extra"] = extra

        if record.levelno >= logging.WARNING:
            entry["location"] = f"{record.pathname}:{record.lineno} in {record.funcName}"

        if record.exc_info and record.exc_info[0]:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": "".join(traceback.format_exception(*record.exc_info)),
            }

        return json.dumps(entry, default=str)


class RequestContextFilter(logging.Filter):
    """Stamp each record with the current request id and operator."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id.get()
        record.operator_id = _operator_id.get()
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = "restaurant-payments"
) -> logging.Logger:
    """
    Configure the root logger for the service.

    Args:
        level: Log level name
        json_format: JSON lines (production) or plain text (development)
        service_name: Value of the "service" key in JSON records
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.addFilter(RequestContextFilter())

    if json_format:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(request_id)s] %(name)s %(levelname)s %(message)s"
        ))

    root_logger.addHandler(handler)

    for noisy in ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root_logger


def set_request_context(request_id: Optional[str] = None, operator_id: Optional[str] = None):
    _request_id.set(request_id)
    _operator_id.set(operator_id)


def clear_request_context():
    _request_id.set(None)
    _operator_id.set(None)
