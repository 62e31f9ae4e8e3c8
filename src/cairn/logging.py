"""Structured logging utilities for cairn.

This module provides:
- Console and file logging configuration with verbosity levels
- Structured logging with resource context (identity, event)
- Apply timing
- Secret scrubbing on every configured handler
"""

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from cairn.secret import redact

# Standard log format
DEFAULT_FORMAT = "%(levelname)s [%(name)s] %(message)s"
DEBUG_FORMAT = "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
TRACE_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"

# Custom TRACE level (more detailed than DEBUG; snapshot contents, store keys)
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

# Verbosity level mapping
VERBOSITY_LEVELS = {
    0: logging.WARNING,   # Default: warnings and errors only
    1: logging.INFO,      # -v: lifecycle events
    2: logging.DEBUG,     # -vv: state store activity
    3: TRACE,             # -vvv: everything
}


def get_level_from_verbosity(verbosity: int) -> int:
    """Convert verbosity count to logging level.

    Args:
        verbosity: Number of -v flags (0-3+)

    Returns:
        Logging level constant
    """
    return VERBOSITY_LEVELS.get(min(verbosity, 3), TRACE)


def get_level_from_name(level_name: str) -> int:
    """Convert level name to logging level.

    Args:
        level_name: Level name (trace, debug, info, warning, error, critical)

    Returns:
        Logging level constant

    Raises:
        ValueError: If level name is invalid
    """
    level_map = {
        "trace": TRACE,
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
        "critical": logging.CRITICAL,
    }
    level_lower = level_name.lower()
    if level_lower not in level_map:
        valid = ", ".join(level_map.keys())
        raise ValueError(f"Invalid log level: {level_name}. Valid levels: {valid}")
    return level_map[level_lower]


class SecretRedactionFilter(logging.Filter):
    """Replace the plaintext of known secrets in log records with a mask.

    Every string wrapped in a Secret during this process is a known secret.
    The filter renders the record's message, scrubs it and freezes the
    result so later formatting cannot reintroduce the value.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        scrubbed = redact(message)
        if scrubbed != message:
            record.msg = scrubbed
            record.args = None
        return True


def configure_logging(
    level: int = logging.WARNING,
    format_string: str | None = None,
    debug: bool = False,
    log_file: str | Path | None = None,
    file_level: int | None = None,
) -> None:
    """Configure logging for cairn.

    Installs a SecretRedactionFilter on every handler it creates.

    Args:
        level: Logging level for console (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_string: Custom format string (uses default if None)
        debug: If True, use debug format with timestamps and line numbers
        log_file: Optional path to write logs to file
        file_level: Optional separate level for file logging (defaults to level)

    Example:
        >>> configure_logging(level=logging.INFO)
        >>> configure_logging(level=logging.WARNING, log_file=".cairn/run.log", file_level=logging.DEBUG)
    """
    if format_string is None:
        if level <= TRACE:
            format_string = TRACE_FORMAT
        elif debug or level <= logging.DEBUG:
            format_string = DEBUG_FORMAT
        else:
            format_string = DEFAULT_FORMAT

    root_logger = logging.getLogger()
    root_logger.setLevel(min(level, file_level or level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    redaction = SecretRedactionFilter()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(format_string))
    console_handler.addFilter(redaction)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file) if isinstance(log_file, str) else log_file
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(file_level or level)
        # Always use detailed format for file logging
        file_handler.setFormatter(logging.Formatter(DEBUG_FORMAT))
        file_handler.addFilter(redaction)
        root_logger.addHandler(file_handler)


class StructuredLogger:
    """Logger that appends key=value context to every message.

    The engine keeps one per module and passes the resource identity and
    event as per-message context.

    Example:
        >>> logger = StructuredLogger("cairn.resource", app="myapp")
        >>> logger.info("Applied", resource="myapp/dev/db-1", event="create")
        INFO [cairn.resource] Applied (app=myapp, resource=myapp/dev/db-1, event=create)
    """

    def __init__(self, name: str, **context: Any) -> None:
        self.logger = logging.getLogger(name)
        self.context: dict[str, Any] = context.copy()

    def add_context(self, **context: Any) -> None:
        """Add context that will be included in all future log messages."""
        self.context.update(context)

    def remove_context(self, *keys: str) -> None:
        """Remove context keys."""
        for key in keys:
            self.context.pop(key, None)

    def _format_message(self, message: str, **extra: Any) -> str:
        combined = {**self.context, **extra}
        if not combined:
            return message
        context_str = ", ".join(f"{k}={v}" for k, v in combined.items())
        return f"{message} ({context_str})"

    def log(self, level: int, message: str, **extra: Any) -> None:
        if self.logger.isEnabledFor(level):
            self.logger.log(level, self._format_message(message, **extra))

    def trace(self, message: str, **extra: Any) -> None:
        self.log(TRACE, message, **extra)

    def debug(self, message: str, **extra: Any) -> None:
        self.log(logging.DEBUG, message, **extra)

    def info(self, message: str, **extra: Any) -> None:
        self.log(logging.INFO, message, **extra)

    def warning(self, message: str, **extra: Any) -> None:
        self.log(logging.WARNING, message, **extra)

    def error(self, message: str, **extra: Any) -> None:
        self.log(logging.ERROR, message, **extra)

    @contextmanager
    def performance(
        self,
        operation: str,
        level: int = logging.INFO,
        threshold: float | None = None,
        **context: Any,
    ) -> Generator[None, None, None]:
        """Time a block and log its duration with context.

        Args:
            operation: Operation description
            level: Log level
            threshold: Only log if duration exceeds threshold (seconds)
            **context: Additional context for this operation

        Example:
            >>> with logger.performance("Apply", resource="dev/db-1", event="update"):
            ...     await handler(ctx, props)
            INFO: Apply completed in 0.412s (resource=dev/db-1, event=update)
        """
        start_time = time.perf_counter()
        try:
            yield
        finally:
            duration = time.perf_counter() - start_time
            if threshold is None or duration >= threshold:
                self.log(level, f"{operation} completed in {duration:.3f}s", **context)


def get_logger(name: str, **context: Any) -> StructuredLogger:
    """Get a structured logger.

    Args:
        name: Logger name (typically __name__)
        **context: Initial context

    Returns:
        StructuredLogger instance
    """
    return StructuredLogger(name, **context)
