"""
Restaurant Payments Core - Sentry Integration

Error tracking and operator alerts. Two reconciliation conditions page an
operator: a webhook delivery with a bad secret, and a Casso outage that
outlives the poller's retries. Match rejections are routine and stay in
the logs and the unmatched queue.

Events are scrubbed before they leave the process: credentials by key
name, and customer phone numbers inside transfer memos.
"""

import logging
import os
import re
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = (
    "password", "token", "secret", "api_key", "apikey", "authorization",
    "secure-token", "x-casso-signature", "x-internal-api-key", "cookie",
)

# Vietnamese mobile numbers as customers type them into transfer memos
PHONE_PATTERN = re.compile(r"(?<!\d)(?:\+?84|0)\d{9}(?!\d)")

# Context keys that become searchable Sentry tags instead of extras
TAG_KEYS = ("transaction_id", "order_number", "client_host")


def init_sentry(
    dsn: Optional[str] = None,
    environment: str = "development",
    release: Optional[str] = None,
    traces_sample_rate: float = 0.0,
) -> bool:
    """
    Initialize Sentry when a DSN is configured.

    Returns:
        True if Sentry was initialized
    """
    dsn = dsn or os.environ.get("SENTRY_DSN", "")
    if not dsn:
        logger.info("Sentry DSN not configured. Error tracking disabled.")
        return False

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=release or os.environ.get("GIT_SHA", "unknown"),
        traces_sample_rate=traces_sample_rate,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        send_default_pii=False,
        before_send=filter_sensitive_data,
    )

    logger.info(f"Sentry initialized for environment: {environment}")
    return True


def _scrub(key: str, value: Any) -> Any:
    if any(s in key.lower() for s in SENSITIVE_KEYS):
        return "[REDACTED]"
    if isinstance(value, dict):
        return redact_dict(value)
    if isinstance(value, list):
        return [_scrub(key, v) for v in value]
    if isinstance(value, str):
        return PHONE_PATTERN.sub("[PHONE]", value)
    return value


def redact_dict(d: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of `d` with credentials masked and phone numbers replaced."""
    if not isinstance(d, dict):
        return d
    return {key: _scrub(str(key), value) for key, value in d.items()}


def filter_sensitive_data(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """before_send hook."""
    request = event.get("request")
    if request:
        for section in ("headers", "data", "query_string"):
            if isinstance(request.get(section), dict):
                request[section] = redact_dict(request[section])

    if "extra" in event:
        event["extra"] = redact_dict(event["extra"])

    return event


def _apply_context(scope, context: Dict[str, Any]) -> None:
    for key, value in context.items():
        if key in TAG_KEYS and value is not None:
            scope.set_tag(key, str(value))
        else:
            scope.set_extra(key, value)


def capture_exception(exception: Exception, **context) -> Optional[str]:
    """Report an exception; transaction/order keys are attached as tags."""
    with sentry_sdk.new_scope() as scope:
        _apply_context(scope, context)
        return sentry_sdk.capture_exception(exception)


def capture_message(message: str, level: str = "info", **context) -> Optional[str]:
    """
    Raise an operator alert.

    Args:
        message: Alert title
        level: Sentry level (info, warning, error, fatal)
        **context: Tags (transaction_id, order_number, client_host) or extras
    """
    with sentry_sdk.new_scope() as scope:
        _apply_context(scope, context)
        return sentry_sdk.capture_message(message, level=level)


def set_tag(key: str, value: str):
    sentry_sdk.set_tag(key, value)
