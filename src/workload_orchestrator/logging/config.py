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
LOG_DIR = Path.home() / ".local" / "state" / "workload-orchestrator"
LOG_FILE_NAME = "orchestrator.log"
MAX_LOG_SIZE = 10 * 1024 * 1024  # 10 MB
BACKUP_COUNT = 5
RETENTION_DAYS = 14

# Marker attribute so repeated configure_logging() calls replace our handlers
_HANDLER_MARKER = "_workload_orchestrator_handler"


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _cleanup_old_logs(log_dir: Path) -> int:
    """Delete rotated log files older than RETENTION_DAYS.

    Args:
        log_dir: Directory holding the log files.

    Returns:
        Number of files removed.
    """
    if not log_dir.exists():
        return 0
    cutoff = datetime.now() - timedelta(days=RETENTION_DAYS)
    removed = 0
    for log_file in log_dir.glob(f"{LOG_FILE_NAME}*"):
        try:
            if datetime.fromtimestamp(log_file.stat().st_mtime) < cutoff:
                log_file.unlink()
                removed += 1
        except OSError as e:
            # Another process may have rotated the file away first
            logging.getLogger(__name__).debug("log cleanup skipped %s: %s", log_file, e)
    return removed


def _setup_file_logging(log_file: Path) -> RotatingFileHandler:
    """Attach a rotating JSON file handler to the root logger."""
    log_file.parent.mkdir(parents=True, exist_ok=True)
    _cleanup_old_logs(log_file.parent)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=MAX_LOG_SIZE,
        backupCount=BACKUP_COUNT,
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=_shared_processors(),
        )
    )
    setattr(file_handler, _HANDLER_MARKER, True)
    logging.getLogger().addHandler(file_handler)
    return file_handler


def configure_logging(
    verbose: bool = False,
    debug: bool = False,
    json_output: bool = False,
    log_file: Path | None = None,
) -> None:
    """Configure structured logging for the library and its host process.

    Console output goes to stdout. When ``log_file`` is given, a rotating
    JSON log (10MB max, 5 backups, 14 day retention) is written as well.
    Hosts that already configure logging can skip this entirely; every
    module logs through ``structlog.get_logger()``.

    Args:
        verbose: Enable verbose (INFO level) output.
        debug: Enable debug mode (DEBUG level).
        json_output: Render console logs as JSON lines.
        log_file: Optional path for the rotating file log. Pass
            ``LOG_DIR / LOG_FILE_NAME`` for the default location.
    """
    if debug:
        log_level = logging.DEBUG
    elif verbose:
        log_level = logging.INFO
    else:
        log_level = logging.WARNING

    shared_processors = _shared_processors()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    console_handler = logging.StreamHandler(sys.stdout)
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
    setattr(console_handler, _HANDLER_MARKER, True)

    root_logger = logging.getLogger()
    root_logger.handlers = [
        h for h in root_logger.handlers if not getattr(h, _HANDLER_MARKER, False)
    ]
    root_logger.setLevel(logging.DEBUG)  # Let handlers filter
    root_logger.addHandler(console_handler)

    # The kubernetes client logs every request body at DEBUG, including tokens
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    if log_file is not None:
        _setup_file_logging(log_file)


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
