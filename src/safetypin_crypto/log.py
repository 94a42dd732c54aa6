"""
Structured logging.

Library modules log through get_logger, which wraps a stdlib logger: until
the host configures logging, events below WARNING are dropped by the
standard library instead of printed to stdout. Entry points call
configure_logging to emit JSON lines.
"""

from __future__ import annotations

import logging
import sys

import structlog


def get_logger(name: str) -> structlog.typing.FilteringBoundLogger:
    """Return a structlog logger backed by the stdlib logger `name`."""
    return structlog.wrap_logger(logging.getLogger(name))


def configure_logging(level: int = logging.INFO) -> None:
    """Route structlog through stdlib logging to stderr as JSON lines."""
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_log_level,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
