"""Structured logging configuration using structlog.

Provides JSON-formatted logging with:
- Request ids for HTTP traffic and event/correlation ids for bus messages
- Contextual information (tenant_id, profile_id, subscription_id)
- Timestamp and log level
- Payroll numbers masked before rendering
"""

import logging
import os
import sys
from typing import Any

import structlog
from structlog.typing import EventDict, Processor

APP_NAME = "membership-subscriptions"

# Payroll numbers identify an employee; logs only keep the last two characters.
MASKED_FIELDS = frozenset({"payroll_no"})


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application-wide context to log events."""
    event_dict["app"] = APP_NAME
    return event_dict


def _mask(value: Any) -> Any:
    if value is None:
        return None
    text = str(value)
    return "*" * max(len(text) - 2, 0) + text[-2:]


def mask_payroll_numbers(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask payroll numbers, both as plain fields and inside field-change maps."""
    for key in MASKED_FIELDS.intersection(event_dict):
        event_dict[key] = _mask(event_dict[key])
    changes = event_dict.get("changes")
    if isinstance(changes, dict):
        for key in MASKED_FIELDS.intersection(changes):
            change = changes[key]
            if isinstance(change, dict):
                changes[key] = {side: _mask(value) for side, value in change.items()}
            else:
                changes[key] = _mask(change)
    return event_dict


def drop_debug_in_production(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Drop DEBUG logs if not in debug mode."""
    if method_name == "debug" and not is_debug_mode():
        raise structlog.DropEvent
    return event_dict


def is_debug_mode() -> bool:
    """Check if debug mode is enabled via LOG_LEVEL environment variable."""
    return os.getenv("LOG_LEVEL", "INFO").upper() == "DEBUG"


def configure_logging(
    log_level: str = "INFO",
    json_format: bool = True,
    include_timestamp: bool = True,
) -> None:
    """Configure structlog for the service.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: If True, output JSON; if False, use colored console output
        include_timestamp: Include ISO8601 timestamps in logs
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_app_context,
        mask_payroll_numbers,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if include_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso", utc=True))

    if numeric_level > logging.DEBUG:
        processors.append(drop_debug_in_production)

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance.

    Args:
        name: Logger name (typically __name__ from calling module)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context variables that will be included in all subsequent logs.

    Example:
        bind_context(correlation_id="abc123", tenant_id="tenant-1")
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Unbind context variables."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all context variables."""
    structlog.contextvars.clear_contextvars()
