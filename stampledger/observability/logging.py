"""
Structured logging for stampledger.

structlog renders every record (ours and stdlib's) as JSON or console output.
Secrets never reach the output: webhook tokens, API keys and gateway access
tokens are masked, and raw proof bytes are summarised by length.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from stampledger.config import settings

REDACTED = "[redacted]"

SECRET_KEYS = frozenset(
    {"api_key", "access_token", "token", "webhook_secret", "gateway_api_key", "authorization"}
)

# Chatty client libraries; their request lines duplicate our own events.
QUIET_LOGGERS = ("httpx", "httpcore", "hpack")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask credential values by key name."""
    for key in event_dict.keys() & SECRET_KEYS:
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def summarize_binary(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Replace bytes values (proofs, raw bodies) with their size."""
    for key, value in event_dict.items():
        if isinstance(value, (bytes, bytearray)):
            event_dict[key] = f"<{len(value)} bytes>"
    return event_dict


def build_processors(log_format: str, debug: bool) -> list[Processor]:
    """Processor chain shared by structlog and the stdlib bridge."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_secrets,
        summarize_binary,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.ExceptionRenderer() if debug else structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def setup_logging() -> None:
    """
    Configure structlog from settings.

    A JSON record looks like:
    {
        "event": "credit_consumed",
        "level": "info",
        "timestamp": "2026-10-18T12:00:00.123456Z",
        "logger": "stampledger.services.ledger",
        "service": "stampledger-api",
        "version": "0.1.0",
        "user_id": "user-123",
        "registration_id": "6f1c...",
        "remaining_balance": 4
    }
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=build_processors(settings.log_format, debug=level == logging.DEBUG),
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
        logger.info("credit_consumed", user_id=user_id, remaining_balance=4)
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind keys to every log line emitted inside the block.

    Usage:
        with log_context(registration_id="reg-123", owner_id="user-456"):
            logger.info("submission_started")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context)
