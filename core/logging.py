"""Structured logging configuration for the package observer."""

import logging
import os
import sys
from collections.abc import Mapping, MutableMapping
from functools import lru_cache
from typing import Any

import structlog
from structlog.types import Processor

from . import __version__

SERVICE_NAME = "package-observer"

# Libraries that log every job run or request at INFO
_NOISY_LOGGERS = ("apscheduler", "aiohttp.access")


def _use_console_renderer() -> bool:
    """Human readable output on a terminal or in development, JSON otherwise."""
    from .config import get_settings

    if get_settings().debug or os.getenv("ENV") == "development":
        return True
    return os.getenv("ENV") is None and sys.stdout.isatty()


def _add_service_context(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> Mapping[str, Any] | str | bytes | bytearray | tuple[Any, ...]:
    """Tag every entry with the service, its version and the process id."""
    event_dict.setdefault("service", SERVICE_NAME)
    event_dict.setdefault("version", __version__)
    event_dict.setdefault("pid", os.getpid())
    return event_dict


def get_processors(console: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        _add_service_context,
    ]

    if console:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    else:
        processors += [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    return processors


@lru_cache(maxsize=1)
def configure_logging(level: str = "INFO") -> None:
    """Configure structured logging. Call once at process startup."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level, force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    structlog.configure(
        processors=get_processors(_use_console_renderer()),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, configuring defaults on first use."""
    if not structlog.is_configured():
        configure_logging()
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def flush_logging() -> None:
    """Flush every handler attached to the root logger (used before exit)."""
    for handler in logging.getLogger().handlers:
        handler.flush()


__all__ = [
    "SERVICE_NAME",
    "configure_logging",
    "get_logger",
    "flush_logging",
]
