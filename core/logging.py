"""
Logging configuration for the race prediction collector.

Provides structured logging that can be:
- Written to console during development
- Tagged with the race/image being processed

Usage:
    from core.logging import get_logger

    logger = get_logger(__name__)
    logger.info("Merged race", extra={"race": "20250525-05-11"})
    logger.warning("Marks need review", extra={"marks": "☆,△"})
"""

import logging
import sys
from typing import Optional


# Custom formatter that includes extra fields
class StructuredFormatter(logging.Formatter):
    """Formatter that includes extra fields in log output."""

    _RESERVED = {
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "pathname", "process", "processName", "relativeCreated",
        "stack_info", "exc_info", "exc_text", "thread", "threadName",
        "message", "asctime", "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)

        extras = []
        for key, value in record.__dict__.items():
            if key not in self._RESERVED:
                extras.append(f"{key}={value}")

        if extras:
            return f"{base} | {' '.join(extras)}"
        return base


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Get a configured logger.

    Args:
        name: Logger name (usually __name__)
        level: Logging level

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)

    # Only configure if not already configured
    if not logger.handlers:
        logger.setLevel(level)

        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)

        formatter = StructuredFormatter(
            "%(asctime)s - %(levelname)s - %(name)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

        logger.addHandler(handler)

    return logger


def set_verbose(verbose: bool) -> None:
    """Switch every collector logger between INFO and DEBUG."""
    level = logging.DEBUG if verbose else logging.INFO
    for name, logger in logging.Logger.manager.loggerDict.items():
        if not isinstance(logger, logging.Logger):
            continue
        if name.startswith(("core", "api", "cli", "keiba")):
            logger.setLevel(level)
            for handler in logger.handlers:
                handler.setLevel(level)


class LogContext:
    """
    Context manager for adding context to log messages.

    Usage:
        with LogContext(logger, race="20250525-05-11"):
            logger.info("Processing")  # Will include race=20250525-05-11
    """

    def __init__(self, logger: logging.Logger, **context):
        self.logger = logger
        self.context = context
        self._old_factory = None

    def __enter__(self):
        self._old_factory = logging.getLogRecordFactory()

        def factory(*args, **kwargs):
            record = self._old_factory(*args, **kwargs)
            for key, value in self.context.items():
                setattr(record, key, value)
            return record

        logging.setLogRecordFactory(factory)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        logging.setLogRecordFactory(self._old_factory)
        return False


# Logger for run-level messages (start, abort, totals)
run_logger = get_logger("keiba.run")


def log_collector_call(
    logger: logging.Logger,
    collector: str,
    unit: str,
    success: bool,
    duration_ms: Optional[float] = None,
    error: Optional[str] = None,
) -> None:
    """Log a collaborator call with standard format."""
    extra = {
        "collector": collector,
        "unit": unit,
        "success": success,
    }
    if duration_ms:
        extra["duration_ms"] = round(duration_ms, 2)
    if error:
        extra["error"] = error

    if success:
        logger.debug(f"Collector call: {collector}", extra=extra)
    else:
        logger.warning(f"Collector call failed: {collector}", extra=extra)


def log_unit_failure(
    logger: logging.Logger,
    run: str,
    unit: str,
    error: BaseException,
) -> None:
    """Log a unit that raised; the run carries on with the next unit."""
    logger.error(
        f"[{run}] {unit} failed: {error}",
        extra={"run": run, "unit": unit, "error_type": type(error).__name__},
    )


def log_unit_skip(
    logger: logging.Logger,
    run: str,
    unit: str,
    reason: str,
    **details,
) -> None:
    """Log when a unit produced nothing to merge."""
    logger.info(
        f"[{run}] Skipping {unit}: {reason}",
        extra={"run": run, "unit": unit, **details},
    )


def log_uncertain_marks(
    logger: logging.Logger,
    unit: str,
    flagged: list[dict],
) -> None:
    """Log OCR observations that need a manual look."""
    marks = ",".join(str(f.get("mark")) for f in flagged)
    logger.warning(
        f"Uncertain marks for {unit}: {marks}",
        extra={"unit": unit, "marks": marks, "flagged": flagged},
    )
