"""
Structured Logging with Structlog.

JSON logs with bound job context (user_id, job_id, provider) and masking of
credentials that may end up in event fields.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from promind.config import settings

# Event fields whose values are never written out
_SECRET_FIELDS = frozenset({"api_key", "authorization", "secret_key", "access_key", "token"})

# Third-party loggers that are chatty at INFO (one line per HTTP call)
_QUIET_LOGGERS = ("httpx", "httpcore", "openai")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp service name and version on every entry."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.service_version
    return event_dict


def mask_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Replace credential-looking fields with a fixed marker."""
    for key in event_dict.keys() & _SECRET_FIELDS:
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def setup_logging() -> None:
    """
    Configure structlog on top of the stdlib logging module.

    A JSON entry looks like:
    {
        "event": "job_poll_failed",
        "level": "warning",
        "timestamp": "2026-10-19T12:00:00.123456Z",
        "logger": "promind.services.orchestrator",
        "service": "promind-bot",
        "user_id": 123456789,
        "job_id": "run_abc",
        "provider": "assistant",
        "attempt": 3
    }

    LOG_FORMAT=console switches to the coloured developer renderer.
    """
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        mask_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

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
        logger.info("ledger_debit_applied", user_id=user_id, amount=amount)
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind fields to every log entry emitted inside the block.

    Usage:
        with log_context(user_id=42, job_id="run_1"):
            logger.info("job_polling")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())
