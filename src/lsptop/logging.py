"""Logging configuration for lsp-top.

Uses Python's standard logging module with support for:
- A rotating log file (renamed to ``<file>.1`` once it exceeds ``max_bytes``)
- Verbosity levels: error(0), warning(1), info(2), verbose(3), trace(4)
- Trace flags that gate chatty records (``extra={"flag": "protocol"}``)
- Per-caller log frames: records emitted while serving a verbose request
  are forwarded to that request's connection only
- Stderr fallback when the log file cannot be opened
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import os
import sys
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from lsptop.config.schema import LoggingConfig

# Custom log levels
TRACE = 5
VERBOSE = 15

logging.addLevelName(TRACE, "TRACE")
logging.addLevelName(VERBOSE, "VERBOSE")

logger = logging.getLogger("lsptop")

_initialized = False
_file_handler: logging.Handler | None = None

_LEVEL_MAP = {
    "TRACE": TRACE,
    "DEBUG": logging.DEBUG,
    "VERBOSE": VERBOSE,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Map --verbose=N to log levels (0=errors only, 4=everything)
_VERBOSITY_MAP = {
    0: logging.ERROR,
    1: logging.WARNING,
    2: logging.INFO,
    3: VERBOSE,
    4: TRACE,
}

DEFAULT_MAX_BYTES = 5 * 1024 * 1024

# Sink for the request currently being served by this task, if it asked
# for log frames. Tasks inherit a copy of the context at creation time.
_caller_sink: contextvars.ContextVar[Callable[[str], None] | None] = contextvars.ContextVar(
    "lsptop_caller_sink", default=None
)

_caller_level: contextvars.ContextVar[int] = contextvars.ContextVar(
    "lsptop_caller_level", default=logging.NOTSET
)
_caller_flags: contextvars.ContextVar[frozenset[str]] = contextvars.ContextVar(
    "lsptop_caller_flags", default=frozenset()
)

_enabled_flags: set[str] = set()


def parse_level(value: str | None, default: int = logging.INFO) -> int:
    if not value:
        return default
    return _LEVEL_MAP.get(value.upper(), default)


class StructuredFormatter(logging.Formatter):
    """ISO timestamp, lowercase level, message and an optional ``[flag]``."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(
            timespec="milliseconds"
        )
        line = f"{timestamp} {record.levelname.lower()}: {record.getMessage()}"
        flag = getattr(record, "flag", None)
        if flag:
            line = f"{line} [{flag}]"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class TraceFlagFilter(logging.Filter):
    """Drop records tagged with a trace flag that is not enabled."""

    def filter(self, record: logging.LogRecord) -> bool:
        flag = getattr(record, "flag", None)
        if not flag:
            return True
        if flag in _enabled_flags or "all" in _enabled_flags:
            return True
        caller_flags = _caller_flags.get()
        return flag in caller_flags or "all" in caller_flags


class CallerLogHandler(logging.Handler):
    """Forward records to the sink bound for the current task.

    The sink is whatever the Connection Server bound with
    :func:`bind_caller_sink`; records from tasks with no binding are ignored.
    """

    def emit(self, record: logging.LogRecord) -> None:
        sink = _caller_sink.get()
        if sink is None or record.levelno < _caller_level.get():
            return
        try:
            sink(self.format(record))
        except Exception:
            self.handleError(record)


_caller_handler = CallerLogHandler()


@contextmanager
def bind_caller_sink(
    sink: Callable[[str], None] | None,
    *,
    level: int = logging.NOTSET,
    flags: Iterable[str] = (),
) -> Iterator[None]:
    """Route records emitted in this context (and tasks created in it) to ``sink``.

    Args:
        sink: Receives each formatted record; None disables forwarding.
        level: Records below this level are not forwarded.
        flags: Extra trace flags enabled for this context only.
    """
    tokens = (
        _caller_sink.set(sink),
        _caller_level.set(level),
        _caller_flags.set(frozenset(flags)),
    )
    try:
        yield
    finally:
        _caller_flags.reset(tokens[2])
        _caller_level.reset(tokens[1])
        _caller_sink.reset(tokens[0])


def detach_caller_sink() -> None:
    """Clear the caller binding for the running task.

    Long-lived background tasks call this first so that records they emit
    are never attributed to whichever request happened to spawn them.
    """
    _caller_sink.set(None)
    _caller_flags.set(frozenset())


def set_trace_flags(flags: Iterable[str]) -> None:
    _enabled_flags.clear()
    _enabled_flags.update(f.strip() for f in flags if f and f.strip())


def enabled_trace_flags() -> frozenset[str]:
    return frozenset(_enabled_flags)


def setup_logging(config: LoggingConfig | None = None) -> None:
    """Initialize logging based on configuration.

    Call this once at daemon or CLI startup. Subsequent calls are no-ops
    until :func:`reset_logging`.

    Args:
        config: Optional LoggingConfig with level, verbose, file and trace settings.
    """
    global _initialized, _file_handler
    if _initialized:
        return
    _initialized = True

    log_level = logging.INFO
    if config:
        if config.verbose is not None:
            log_level = _VERBOSITY_MAP.get(config.verbose, TRACE)
        elif config.level:
            log_level = parse_level(config.level)
        set_trace_flags(config.trace)

    # Handlers apply the configured level; the logger stays open to DEBUG so
    # verbose callers can receive records the log file does not keep.
    logger.setLevel(min(log_level, logging.DEBUG))
    logger.propagate = False

    formatter = StructuredFormatter()
    flag_filter = TraceFlagFilter()

    _caller_handler.setFormatter(formatter)
    _caller_handler.addFilter(flag_filter)
    logger.addHandler(_caller_handler)

    log_path = config.file if config and config.file else os.environ.get("LSPTOP_LOG")
    max_bytes = config.max_bytes if config else DEFAULT_MAX_BYTES

    if log_path:
        log_path = os.path.expanduser(log_path)
        try:
            _file_handler = logging.handlers.RotatingFileHandler(
                log_path, mode="a", maxBytes=max_bytes, backupCount=1, encoding="utf-8"
            )
            _file_handler.setLevel(log_level)
            _file_handler.setFormatter(formatter)
            _file_handler.addFilter(flag_filter)
            logger.addHandler(_file_handler)
        except OSError as e:
            if sys.stderr.isatty():
                print(f"[lsp-top] Failed to open log file: {e}", file=sys.stderr)
                _add_stderr_handler(formatter, flag_filter, log_level)
    elif sys.stderr.isatty():
        _add_stderr_handler(formatter, flag_filter, log_level)


def _add_stderr_handler(formatter: logging.Formatter, flag_filter: logging.Filter, level: int) -> None:
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(level)
    stderr_handler.setFormatter(formatter)
    stderr_handler.addFilter(flag_filter)
    logger.addHandler(stderr_handler)


def reset_logging() -> None:
    """Remove installed handlers so setup_logging() can run again (tests)."""
    global _initialized, _file_handler
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        if handler is not _caller_handler:
            handler.close()
    _caller_handler.filters.clear()
    _file_handler = None
    _enabled_flags.clear()
    _initialized = False


def clear_log_file(path: str) -> None:
    """Truncate the log file and drop its backup, as done at daemon start."""
    path = os.path.expanduser(path)
    for candidate in (path, f"{path}.1"):
        try:
            if candidate == path:
                with open(candidate, "w", encoding="utf-8"):
                    pass
            else:
                os.unlink(candidate)
        except FileNotFoundError:
            continue


def get_logger(name: str | None = None) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Optional name for a child logger (e.g., "protocol", "session").
              If None, returns the root lsptop logger.
    """
    if name:
        return logger.getChild(name)
    return logger
