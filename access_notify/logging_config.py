"""Structlog configuration helpers for structured logging."""

from __future__ import annotations

import logging
import sys

import structlog

from .config import LogConfig

LOG_LEVEL = logging.INFO


def _output_handler(output: str) -> logging.Handler:
    if output == "stderr":
        return logging.StreamHandler(sys.stderr)
    if output == "stdout":
        return logging.StreamHandler(sys.stdout)
    return logging.FileHandler(output, encoding="utf-8")


def configure_logging(log_config: LogConfig | None = None) -> None:
    """Configure structlog to emit JSON-formatted logs to the configured output."""

    log_config = log_config or LogConfig()
    level = logging.getLevelName(log_config.severity)
    if not isinstance(level, int):
        level = LOG_LEVEL

    timestamper = structlog.processors.TimeStamper(fmt="iso")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            timestamper,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[_output_handler(log_config.output)],
        force=True,
    )
