"""
Structured Logging with Structlog.

SDK modules log with ``logger = get_logger(__name__)`` and snake_case event
names. Host applications that already configure structlog can skip
``setup_logging``; it exists for standalone scripts and services.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from unipay.config import get_settings

# Fields that must never reach a log line
_REDACTED_KEYS = frozenset(
    {
        "authorization",
        "secret_key",
        "client_secret",
        "api_key",
        "api_token",
        "access_token",
        "hmac",
        "secret_token",
        "password",
        "cvc",
        "number",
    }
)


def add_sdk_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add SDK-level context to all log entries."""
    settings = get_settings()
    event_dict["service"] = settings.service_name
    event_dict["sdk_version"] = settings.sdk_version
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask credential-like fields passed as log keywords."""
    for key in event_dict.keys() & _REDACTED_KEYS:
        event_dict[key] = "***"
    return event_dict


def setup_logging() -> None:
    """
    Configure structured logging with structlog.

    Logs are formatted as JSON for machine parsing:
    {
        "event": "paypal_order_created",
        "level": "info",
        "timestamp": "2025-01-08T12:00:00.123456Z",
        "logger": "unipay.gateways.paypal",
        "service": "unipay",
        "sdk_version": "0.1.0",
        "gateway": "paypal",
        ...additional context
    }
    """
    settings = get_settings()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_sdk_context,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.log_level.upper() == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("moyasar_payment_created", payment_id=payment_id, status="paid")
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Context manager for adding structured logging context.

    Usage:
        with log_context(gateway="stripe", operation="refund_payment"):
            logger.info("refund_started")
            # All logs within this context include gateway and operation
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        """Enter context - bind context variables."""
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit context - clear context variables."""
        structlog.contextvars.unbind_contextvars(*self.context.keys())
