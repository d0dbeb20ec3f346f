from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from pathlib import Path

LOGGER_NAME = "layered_context"

_STRUCTLOG_CONFIGURED = False


def _make_handler(filename: str | Path | None) -> logging.Handler:
    if filename:
        return logging.FileHandler(str(filename), encoding="utf-8")
    return logging.StreamHandler(sys.stderr)


def setup_logging(filename: str | Path | None = None, *, level: int = logging.INFO) -> structlog.BoundLogger:
    """Set up structured JSON logging for the layered_context package.

    structlog is configured once per process. The stdlib handler of the
    package logger is replaced on every call, so a CLI can send the logs to a
    file after the modules have been imported.

    Args:
        filename: Optional path to a log file. If None, logs are written to stderr.
        level: Minimum level emitted.

    Returns:
        A structlog logger bound to the package logger.
    """
    global _STRUCTLOG_CONFIGURED  # noqa: PLW0603

    std_logger = logging.getLogger(LOGGER_NAME)
    for old in list(std_logger.handlers):
        std_logger.removeHandler(old)
        old.close()
    handler = _make_handler(filename)
    handler.setFormatter(logging.Formatter("%(message)s"))
    std_logger.addHandler(handler)
    std_logger.setLevel(level)
    std_logger.propagate = False

    if not _STRUCTLOG_CONFIGURED:
        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )
        _STRUCTLOG_CONFIGURED = True

    return structlog.get_logger(LOGGER_NAME)


logger = setup_logging()
