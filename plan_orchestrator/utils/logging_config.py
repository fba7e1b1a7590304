"""
Structured logging setup (structlog, one JSON object per line).

This module provides centralized logging setup for the orchestrator, with
support for run-scoped context: the coordinator binds ``plan_id`` with
``structlog.contextvars`` so every line emitted while a run executes carries
it.
"""

import logging
import sys

import structlog

from plan_orchestrator.exceptions import ConfigurationError


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging with JSON output on stderr.

    Stdout stays free for command output (results, plan listings).

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Raises:
        ConfigurationError: If ``log_level`` is not a known level name.
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ConfigurationError(f"Unknown log level: {log_level}")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
