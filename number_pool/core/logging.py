"""Structured logging configuration.

Every event carries the service name and environment. Background jobs bind
``job`` and ``lease_owner`` for the duration of a run so that log lines from
concurrent instances can be told apart.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Iterator

import structlog

from number_pool.core.config import settings


def _add_service_info(logger, method_name, event_dict):
    event_dict.setdefault("service", "number_pool")
    event_dict.setdefault("env", settings.app_env)
    return event_dict


def setup_logging() -> None:
    """Configure structlog and the stdlib root logger."""
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    if settings.debug:
        level = logging.DEBUG

    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.debug
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_service_info,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # SQLAlchemy and httpx go through stdlib logging
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger("httpx").setLevel(logging.WARNING)


@contextmanager
def job_context(job: str, lease_owner: str) -> Iterator[None]:
    """Bind job name and lease owner to every log line inside the block."""
    structlog.contextvars.bind_contextvars(job=job, lease_owner=lease_owner)
    try:
        yield
    finally:
        structlog.contextvars.unbind_contextvars("job", "lease_owner")


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


logger = get_logger("number_pool")
