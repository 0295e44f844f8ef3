"""Structured logging configuration using *structlog*."""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog


def setup_logging(level: str = "INFO", *, json_logs: bool | None = None) -> None:
    """Configure *structlog* processors and stdlib integration.

    Call once at application startup.  ``json_logs`` defaults to JSON output
    whenever stderr is not a terminal.
    """
    numeric = getattr(logging, level, logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric)
    # APScheduler logs through the stdlib; keep it quieter than our own events.
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    if json_logs is None:
        json_logs = not sys.stderr.isatty()
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


@contextmanager
def job_context(job: str, **values: Any) -> Iterator[None]:
    """Bind ``job`` and *values* to every log event emitted inside the block."""
    with structlog.contextvars.bound_contextvars(job=job, **values):
        yield
