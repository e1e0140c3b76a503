"""
HyperMnemo Logging Configuration
================================
Centralized logging configuration using loguru.

Library modules simply do ``from loguru import logger``; the embedding
application calls :func:`configure_logging` once at startup to choose level,
format and sink.

Usage:
    from hypermnemo.core.logging_config import configure_logging

    configure_logging(level="DEBUG")
    configure_logging(json_format=True, sink="./logs/hypermnemo.jsonl")
"""

from __future__ import annotations

import logging
import os
import sys
from typing import TYPE_CHECKING, Optional

from loguru import logger

if TYPE_CHECKING:
    from .config import HyperMnemoConfig

_CONFIGURED = False

_HUMAN_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)


def configure_logging(
    level: Optional[str] = None,
    json_format: Optional[bool] = None,
    *,
    sink: Optional[str] = None,
    config: Optional["HyperMnemoConfig"] = None,
) -> None:
    """
    Configure loguru logging for HyperMnemo.

    Args:
        level: Log level. Falls back to ``config.observability.log_level``,
            then the LOG_LEVEL environment variable, then INFO.
        json_format: Emit one JSON object per record. Falls back to
            ``config.observability.structured_logging`` or LOG_FORMAT=json.
        sink: Optional file path for log output. If None, logs to stderr.
        config: Optional config supplying observability defaults.
    """
    global _CONFIGURED

    if level is None:
        if config is not None:
            level = config.observability.log_level
        else:
            level = os.environ.get("LOG_LEVEL", "INFO")

    if json_format is None:
        if config is not None and config.observability.structured_logging:
            json_format = True
        else:
            json_format = os.environ.get("LOG_FORMAT", "").lower() == "json"

    logger.remove()
    log_sink = sink if sink else sys.stderr

    if json_format:
        logger.add(
            log_sink,
            level=level.upper(),
            serialize=True,
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )
    else:
        logger.add(
            log_sink,
            level=level.upper(),
            format=_HUMAN_FORMAT,
            colorize=sink is None,
            enqueue=True,
            backtrace=True,
            diagnose=True,
        )

    _intercept_standard_logging()

    _CONFIGURED = True
    logger.debug(f"Logging configured: level={level}, json_format={json_format}")


class _InterceptHandler(logging.Handler):
    """Route stdlib logging records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            log_level = logger.level(record.levelname).name
        except ValueError:
            log_level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            log_level, record.getMessage()
        )


def _intercept_standard_logging() -> None:
    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)


def is_configured() -> bool:
    return _CONFIGURED


__all__ = ["configure_logging", "is_configured", "logger"]
