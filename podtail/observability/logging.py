"""Structured diagnostics for podtail, built on structlog.

Tailed log lines go to stdout; everything logged here goes to stderr so the
two never interleave in a pipe.
"""

from __future__ import annotations

import logging
import sys

import structlog

_RENDERERS = {
    "json": structlog.processors.JSONRenderer,
    "console": lambda: structlog.dev.ConsoleRenderer(colors=False),
}


def setup_logging(level: str = "warning", fmt: str = "console") -> None:
    """Configure structlog; *fmt* selects ``json`` or ``console`` rendering."""
    log_level = getattr(logging, level.upper(), logging.WARNING)
    renderer = _RENDERERS.get(fmt, _RENDERERS["console"])()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(component: str, **context: object) -> structlog.stdlib.BoundLogger:
    """Get a logger bound with a component name and optional target context."""
    return structlog.get_logger(component=component, **context)  # type: ignore[return-value]
