"""structlog configuration shared by the CLI and embedding applications."""

import logging
from typing import TextIO

import structlog


def setup_logging(
    debug: bool = True,
    level: int | None = None,
    stream: TextIO | None = None,
    cache: bool = True,
) -> None:
    """Configure structured logging.

    JSON lines in production, console rendering when debug is on. The CLI
    passes `stream` (stderr) and a higher `level` so log lines never mix
    with command output.
    """
    if level is None:
        level = logging.INFO if not debug else logging.DEBUG

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer() if not debug else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=cache,
    )
