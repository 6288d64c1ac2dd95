"""
Structured Logging with Structlog.

Every entry carries the service name and version. Batch jobs bind the
identity they are working on with ``log_context`` so per-item lines can be
grouped without threading ids through every call.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from displex.config import settings

# Never rendered, whatever the call site passes
REDACTED_KEYS = frozenset({"client_secret", "bot_token", "api_key", "apikey", "code"})

# Chatty at INFO; httpx also logs full request URLs, which carry the Tautulli apikey
QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.application_version
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "[redacted]"
    return event_dict


def build_processors(log_format: str, log_level: str) -> list[Processor]:
    """Processor chain shared by the server and the batch commands."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if log_level.upper() == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def setup_logging() -> None:
    """Configure structlog and the stdlib root logger from settings."""
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=build_processors(settings.log_format, settings.log_level),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def log_context(**context: Any) -> Iterator[None]:
    """Bind ``context`` to every log line emitted inside the block."""
    with structlog.contextvars.bound_contextvars(**context):
        yield
