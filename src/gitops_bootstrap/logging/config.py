"""Structured logging configuration using structlog."""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timedelta
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

# Log file configuration
LOG_DIR = Path.home() / ".local" / "state" / "gitops-bootstrap"
LOG_FILE = LOG_DIR / "gitops-bootstrap.log"
MAX_LOG_SIZE = 10 * 1024 * 1024  # 10 MB
BACKUP_COUNT = 5
RETENTION_DAYS = 30

# Marks handlers installed here so a second configure call replaces them.
_HANDLER_MARKER = "_gitops_bootstrap_handler"


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def resolve_log_level(
    verbose: bool = False,
    debug: bool = False,
    silent: bool = False,
) -> int:
    """Map CLI verbosity flags to a console log level.

    ``debug`` wins over ``verbose``, which wins over ``silent``.
    """
    if debug:
        return logging.DEBUG
    if verbose:
        return logging.INFO
    if silent:
        return logging.ERROR
    return logging.WARNING


def _cleanup_old_logs(log_dir: Path) -> None:
    """Delete log files older than RETENTION_DAYS."""
    if not log_dir.exists():
        return
    cutoff = datetime.now() - timedelta(days=RETENTION_DAYS)
    for log_file in log_dir.glob(f"{LOG_FILE.name}*"):
        try:
            if datetime.fromtimestamp(log_file.stat().st_mtime) < cutoff:
                log_file.unlink()
        except OSError:
            pass  # Ignore errors during cleanup


def _setup_file_logging(log_dir: Path) -> logging.Handler | None:
    """Set up a rotating JSON file handler; ``None`` when the directory is unwritable."""
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError:
        return None
    _cleanup_old_logs(log_dir)

    file_handler = RotatingFileHandler(
        log_dir / LOG_FILE.name,
        maxBytes=MAX_LOG_SIZE,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)  # Capture everything to file
    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=_shared_processors(),
        )
    )
    return file_handler


def configure_logging(
    verbose: bool = False,
    debug: bool = False,
    silent: bool = False,
    json_output: bool = False,
    log_dir: Path | None = None,
    file_logging: bool = True,
) -> None:
    """Configure structured logging for the application.

    Logs go to stderr, filtered by the verbosity flags, and to a rotating
    JSON file at ``~/.local/state/gitops-bootstrap/gitops-bootstrap.log``
    that always records DEBUG and above (10MB max, 5 backups, 30 day
    retention).

    Args:
        verbose: Enable verbose (INFO level) console output.
        debug: Enable debug mode (DEBUG level).
        silent: Only show errors on the console.
        json_output: Output console logs in JSON format.
        log_dir: Override the log file directory.
        file_logging: Disable to skip the file handler.
    """
    log_level = resolve_log_level(verbose=verbose, debug=debug, silent=silent)
    shared_processors = _shared_processors()

    # The file handler records DEBUG, so filtering happens on handlers only.
    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    if json_output:
        console_formatter = structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=shared_processors,
        )
    else:
        console_formatter = structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.RichTracebackFormatter(
                    show_locals=debug,
                ),
            ),
            foreign_pre_chain=shared_processors,
        )
    console_handler.setFormatter(console_formatter)

    handlers: list[logging.Handler] = [console_handler]
    if file_logging:
        file_handler = _setup_file_logging(log_dir or LOG_DIR)
        if file_handler is not None:
            handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Let handlers filter
    for handler in list(root_logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            root_logger.removeHandler(handler)
            handler.close()
    for handler in handlers:
        setattr(handler, _HANDLER_MARKER, True)
        root_logger.addHandler(handler)

    # The kubernetes client logs every request at DEBUG through urllib3.
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def get_logger(name: str | None = None, **initial_context: Any) -> structlog.BoundLogger:
    """Get a configured logger with optional initial context.

    Args:
        name: Logger name. If None, uses the calling module's name.
        **initial_context: Initial context variables to bind to the logger.

    Returns:
        A bound structlog logger.
    """
    logger: structlog.BoundLogger = structlog.get_logger(name)
    if initial_context:
        logger = logger.bind(**initial_context)
    return logger
