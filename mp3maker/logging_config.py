"""
Structured logging setup
"""

import logging
from typing import Optional

import structlog

from mp3maker.services.log_hub import LogHub


def configure_logging(log_hub: Optional[LogHub] = None, debug: bool = False) -> None:
    """
    Configure structlog for the application.

    When a LogHub is given every record is also copied into it, so the
    admin log stream shows what the console shows.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if log_hub is not None:
        processors.append(log_hub.structlog_processor)
    processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG if debug else logging.INFO),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
