# Copyright 2025 Roger Cibrian
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Logging interface for AppxKit.

This module provides a configurable logging interface that library modules
can use for output without depending on the CLI. The logger can be configured
globally or passed as a parameter for better isolation.

The logger supports these output levels:

- Step: Always printed (for progress indicators)
- Verbose: Only printed when verbose mode is enabled
- Debug: Only printed when debug mode is enabled (implies verbose)
- Warning / Error: Always printed

Independently of the console, a DefaultLogger can forward every record to a
LogFileSink: an append-only JSON-lines file per day, rotated by size.

Example:
    Configure global logger:
        ```python
        from appxkit.logging import get_logger, set_global_logger

        logger = get_logger(verbose=True, debug=False)
        set_global_logger(logger)
        ```

    Use in library code:
        ```python
        from appxkit.logging import get_global_logger

        logger = get_global_logger()
        logger.step(1, 4, "Reading manifest...")
        logger.verbose("PACK", "Running MakeAppx.exe")
        logger.debug("TOOLS", "Probing C:/Program Files (x86)/Windows Kits/10")
        ```

    Use with dependency injection:

        def my_function(logger=None):
            if logger is None:
                logger = get_global_logger()
            logger.verbose("MODULE", "Processing...")

Note:
    The default logger is silent, so library functions won't print anything
    unless explicitly configured. The CLI configures the global logger when
    commands are executed.
"""

from __future__ import annotations

from datetime import UTC, datetime
import json
import logging
import logging.handlers
from pathlib import Path
from typing import Any, Protocol

_FILE_LOGGER_NAME = "appxkit.file"


class Logger(Protocol):
    """Protocol for logger implementations."""

    def step(self, step: int, total: int, message: str) -> None:
        """Print a step indicator.

        Args:
            step: Current step number (1-based).
            total: Total number of steps.
            message: Step description.
        """
        ...

    def verbose(
        self, prefix: str, message: str, context: dict[str, Any] | None = None
    ) -> None:
        """Print a verbose log message.

        Args:
            prefix: Message prefix (e.g., "PACK", "SIGN").
            message: Log message.
            context: Optional structured context for the log file.
        """
        ...

    def debug(
        self, prefix: str, message: str, context: dict[str, Any] | None = None
    ) -> None:
        """Print a debug log message."""
        ...

    def warning(
        self, prefix: str, message: str, context: dict[str, Any] | None = None
    ) -> None:
        """Print a warning message."""
        ...

    def error(
        self, prefix: str, message: str, context: dict[str, Any] | None = None
    ) -> None:
        """Print an error message."""
        ...


class _JsonLineFormatter(logging.Formatter):
    """Formats records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "prefix": getattr(record, "prefix", ""),
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context:
            entry["context"] = context
        return json.dumps(entry, default=str)


class LogFileSink:
    """Append-only structured log file, one per day, rotated by size.

    Each entry is a JSON object with timestamp, level, prefix, message and
    optional context. Files are named ``appxkit-YYYYMMDD.log``; when a file
    exceeds ``max_bytes`` it is rotated to ``.1``, ``.2`` ... up to
    ``backup_count``.

    Attributes:
        log_dir: Directory holding the log files.
        max_bytes: Size threshold for rotation.
        backup_count: Number of rotated files kept per day.
    """

    def __init__(
        self, log_dir: Path, max_bytes: int = 5 * 1024 * 1024, backup_count: int = 5
    ) -> None:
        self.log_dir = log_dir
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self._day: str | None = None
        self._handler: logging.handlers.RotatingFileHandler | None = None
        self._logger = logging.getLogger(f"{_FILE_LOGGER_NAME}.{id(self)}")
        self._logger.setLevel(logging.DEBUG)
        self._logger.propagate = False

    @property
    def current_path(self) -> Path:
        """Path of the log file for today."""
        return self.log_dir / f"appxkit-{datetime.now().strftime('%Y%m%d')}.log"

    def _ensure_handler(self) -> None:
        day = datetime.now().strftime("%Y%m%d")
        if self._handler is not None and self._day == day:
            return
        self.close()
        self.log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            self.current_path,
            maxBytes=self.max_bytes,
            backupCount=self.backup_count,
            encoding="utf-8",
        )
        handler.setFormatter(_JsonLineFormatter())
        self._logger.addHandler(handler)
        self._handler = handler
        self._day = day

    def write(
        self,
        level: int,
        prefix: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Append one record to today's log file."""
        self._ensure_handler()
        self._logger.log(level, message, extra={"prefix": prefix, "context": context})

    def close(self) -> None:
        """Flush and detach the current file handler."""
        if self._handler is not None:
            self._logger.removeHandler(self._handler)
            self._handler.close()
            self._handler = None


class DefaultLogger:
    """Default logger implementation that prints to stdout.

    This logger respects verbose and debug flags and formats output
    consistently with the CLI output format. When a sink is attached, every
    record is also written to the log file regardless of console verbosity.
    """

    def __init__(
        self,
        verbose: bool = False,
        debug: bool = False,
        sink: LogFileSink | None = None,
    ) -> None:
        """Initialize logger with verbosity settings.

        Args:
            verbose: If True, print verbose messages.
            debug: If True, print debug messages (implies verbose).
            sink: Optional log file sink receiving every record.
        """
        self._verbose = verbose or debug
        self._debug = debug
        self._sink = sink

    def _record(
        self, level: int, prefix: str, message: str, context: dict[str, Any] | None
    ) -> None:
        if self._sink is not None:
            self._sink.write(level, prefix, message, context)

    def step(self, step: int, total: int, message: str) -> None:
        """Print a step indicator."""
        print(f"[{step}/{total}] {message}")
        self._record(logging.INFO, "STEP", f"[{step}/{total}] {message}", None)

    def verbose(
        self, prefix: str, message: str, context: dict[str, Any] | None = None
    ) -> None:
        """Print a verbose log message (only when verbose mode is active)."""
        if self._verbose:
            print(f"[{prefix}] {message}")
        self._record(logging.INFO, prefix, message, context)

    def debug(
        self, prefix: str, message: str, context: dict[str, Any] | None = None
    ) -> None:
        """Print a debug log message (only when debug mode is active)."""
        if self._debug:
            print(f"[{prefix}] {message}")
        self._record(logging.DEBUG, prefix, message, context)

    def warning(
        self, prefix: str, message: str, context: dict[str, Any] | None = None
    ) -> None:
        """Print a warning message."""
        print(f"[{prefix}] [WARNING] {message}")
        self._record(logging.WARNING, prefix, message, context)

    def error(
        self, prefix: str, message: str, context: dict[str, Any] | None = None
    ) -> None:
        """Print an error message."""
        print(f"[{prefix}] [ERROR] {message}")
        self._record(logging.ERROR, prefix, message, context)


class SilentLogger:
    """Logger that suppresses all output.

    Useful for programmatic usage when output is not desired.
    """

    def step(self, step: int, total: int, message: str) -> None:
        """Suppress step output."""
        pass

    def verbose(
        self, prefix: str, message: str, context: dict[str, Any] | None = None
    ) -> None:
        """Suppress verbose output."""
        pass

    def debug(
        self, prefix: str, message: str, context: dict[str, Any] | None = None
    ) -> None:
        """Suppress debug output."""
        pass

    def warning(
        self, prefix: str, message: str, context: dict[str, Any] | None = None
    ) -> None:
        """Suppress warning output."""
        pass

    def error(
        self, prefix: str, message: str, context: dict[str, Any] | None = None
    ) -> None:
        """Suppress error output."""
        pass


# Global logger instance (defaults to silent)
_global_logger: Logger = SilentLogger()


def get_logger(
    verbose: bool = False, debug: bool = False, sink: LogFileSink | None = None
) -> Logger:
    """Get a logger instance with specified verbosity.

    Args:
        verbose: If True, logger will print verbose messages.
        debug: If True, logger will print debug messages (implies verbose).
        sink: Optional log file sink receiving every record.

    Returns:
        A logger instance configured with the specified verbosity.
    """
    return DefaultLogger(verbose=verbose, debug=debug, sink=sink)


def get_global_logger() -> Logger:
    """Get the global logger instance.

    Returns:
        The current global logger instance.

    Note:
        The default global logger is silent. Use set_global_logger() to
        configure it, or pass a logger instance directly to functions.
    """
    return _global_logger


def set_global_logger(logger: Logger) -> None:
    """Set the global logger instance.

    Args:
        logger: Logger instance to use as the global logger.

    Note:
        This affects all library functions that use get_global_logger()
        without passing a logger instance. For better isolation, pass a
        context with its own logger instead.
    """
    global _global_logger
    _global_logger = logger
