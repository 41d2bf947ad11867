"""Structured logging configuration using structlog.

Every entitlement outcome (verification, transfer, webhook transition,
idempotency commit) is emitted as a leveled event carrying the request,
provider and user context bound by the middleware. Receipts and purchase
tokens are truncated before rendering.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.typing import EventDict, Processor

APP_NAME = "iap-entitlements"

SENSITIVE_FIELDS = frozenset({"receipt", "token", "provider_receipt", "signed_payload", "lineage_id"})

# Client libraries that log every HTTP call or stream ack at INFO
CHATTY_LOGGERS = ("httpx", "httpcore", "google.auth", "google.api_core", "google.cloud.pubsub_v1")


def mask_value(value: str, visible: int = 20) -> str:
    """Shorten a receipt or token so it can be logged safely."""
    if len(value) > visible:
        return value[:visible] + "..."
    return value


def _is_sensitive(key: str) -> bool:
    return key in SENSITIVE_FIELDS or key.endswith("_token")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["app"] = APP_NAME
    return event_dict


def mask_sensitive_fields(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Truncate receipts and purchase tokens, including the bound context."""
    for key, value in event_dict.items():
        if isinstance(value, str) and _is_sensitive(key):
            event_dict[key] = mask_value(value)
    return event_dict


def quiet_library_loggers(numeric_level: int) -> None:
    """Keep provider client libraries at WARNING unless running at DEBUG."""
    library_level = logging.DEBUG if numeric_level <= logging.DEBUG else logging.WARNING
    for name in CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)


def configure_logging(
    log_level: str = "INFO",
    json_format: bool = True,
    include_timestamp: bool = True,
) -> None:
    """Configure structlog for the service.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: JSON lines when True, coloured console output otherwise
        include_timestamp: Include ISO8601 timestamps in logs
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level, force=True)
    quiet_library_loggers(numeric_level)

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        add_app_context,
        mask_sensitive_fields,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if include_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso", utc=True))

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(colors=True, exception_formatter=structlog.dev.plain_traceback)
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a logger; pass the calling module's ``__name__``."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind fields to every log event of the current request or message.

    Example:
        bind_context(request_id="abc123", provider="google")
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
