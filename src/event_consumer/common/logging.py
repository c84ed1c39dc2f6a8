"""
Structured logging utilities for event_consumer.

Provides:
- log_with_context / log_exception helpers passing fields through ``extra``
- Context variables (worker, message, event type) injected into every record
- JSON and console formatters
- setup_logging() for console + rotating file output
"""

import io
import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_LOG_DIR = Path("logs")
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10MB
DEFAULT_BACKUP_COUNT = 5

NOISY_LOGGERS = [
    "aiokafka",
    "kafka",
    "google.api_core",
    "google.auth",
    "grpc",
    "urllib3",
]

_worker_id: ContextVar[Optional[str]] = ContextVar("worker_id", default=None)
_message_id: ContextVar[Optional[str]] = ContextVar("message_id", default=None)
_event_type: ContextVar[Optional[str]] = ContextVar("event_type", default=None)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def set_log_context(
    worker_id: Optional[str] = None,
    message_id: Optional[str] = None,
    event_type: Optional[str] = None,
) -> None:
    """Set context fields for the current task. None leaves a field unchanged."""
    if worker_id is not None:
        _worker_id.set(worker_id)
    if message_id is not None:
        _message_id.set(message_id)
    if event_type is not None:
        _event_type.set(event_type)


def get_log_context() -> Dict[str, Optional[str]]:
    """Return the context fields of the current task."""
    return {
        "worker_id": _worker_id.get(),
        "message_id": _message_id.get(),
        "event_type": _event_type.get(),
    }


def clear_log_context() -> None:
    """Reset all context fields."""
    _worker_id.set(None)
    _message_id.set(None)
    _event_type.set(None)


class MessageLogContext:
    """
    Context manager scoping log context to one message.

    Restores the previous values on exit, so nested use inside a worker
    loop does not leak message identifiers into the next iteration.

    Example:
        with MessageLogContext(message_id=msg.message_id):
            logger.info("Processing")  # carries message_id
    """

    def __init__(
        self,
        message_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ):
        self.message_id = message_id
        self.event_type = event_type
        self._tokens = []

    def __enter__(self) -> "MessageLogContext":
        self._tokens = [
            (_message_id, _message_id.set(self.message_id)),
            (_event_type, _event_type.set(self.event_type)),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []


def log_with_context(
    logger: logging.Logger,
    level: int,
    msg: str,
    **kwargs: Any,
) -> None:
    """
    Log with structured context fields.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, etc.)
        msg: Log message
        **kwargs: Additional context fields (outcome, duration_ms, etc.)

    Example:
        log_with_context(
            logger, logging.INFO, "Message acknowledged",
            outcome="success",
            duration_ms=elapsed,
        )
    """
    logger.log(level, msg, extra=kwargs)


def log_exception(
    logger: logging.Logger,
    exc: Exception,
    msg: str,
    level: int = logging.ERROR,
    include_traceback: bool = True,
    **kwargs: Any,
) -> None:
    """
    Log exception with context and optional traceback.

    Automatically extracts error_category from ConsumerError subclasses.

    Args:
        logger: Logger instance
        exc: Exception to log
        msg: Context message
        level: Log level (default: ERROR)
        include_traceback: Include full traceback (default: True)
        **kwargs: Additional context fields
    """
    error_category = kwargs.get("error_category")
    if error_category is None and hasattr(exc, "category"):
        cat = exc.category
        error_category = cat.value if hasattr(cat, "value") else str(cat)
        kwargs["error_category"] = error_category

    error_msg = str(exc)
    if len(error_msg) > 500:
        error_msg = error_msg[:500] + "..."
    kwargs["error_message"] = error_msg

    if include_traceback:
        logger.log(level, msg, exc_info=exc, extra=kwargs)
    else:
        logger.log(level, msg, extra=kwargs)


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter with context injection.

    Produces one JSON object per line for easy parsing with jq/grep.
    """

    EXTRA_FIELDS = [
        "outcome",
        "reason",
        "delivery_attempt",
        "max_attempts",
        "duration_ms",
        "retry_delay_s",
        "error_category",
        "error_message",
        "bucket",
        "object_name",
        "size",
        "payload_size",
        "topic",
        "partition",
        "offset",
        "group_id",
        "worker_count",
        "consecutive_failures",
        "wait_s",
        "handler",
    ]

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]
            + "Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        for key, value in get_log_context().items():
            if value:
                log_entry[key] = value

        if record.levelno in (logging.DEBUG, logging.ERROR, logging.CRITICAL):
            log_entry["file"] = f"{record.filename}:{record.lineno}"

        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """Human-readable console formatter. Includes context when available."""

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()

        parts = [
            datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            record.levelname,
        ]
        if ctx["worker_id"]:
            parts.append(f"[{ctx['worker_id']}]")

        prefix = " - ".join(parts)

        message_id = ctx["message_id"]
        if message_id:
            return f"{prefix} - [{message_id}] {record.getMessage()}"

        return f"{prefix} - {record.getMessage()}"


def get_log_file_path(log_dir: Path, name: str) -> Path:
    """
    Build log file path with a date subfolder.

    Structure: {log_dir}/{YYYY-MM-DD}/{name}_{YYYYMMDD}.log
    """
    now = datetime.now()
    return log_dir / now.strftime("%Y-%m-%d") / f"{name}_{now.strftime('%Y%m%d')}.log"


def setup_logging(
    name: str = "event_consumer",
    log_dir: Optional[Path] = None,
    json_format: bool = True,
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    suppress_noisy: bool = True,
) -> logging.Logger:
    """
    Configure logging with console and rotating file handlers.

    Args:
        name: Logger name and log file prefix
        log_dir: Directory for log files (default: ./logs)
        json_format: Use JSON format for file logs (default: True)
        console_level: Console handler level (default: INFO)
        file_level: File handler level (default: DEBUG)
        max_bytes: Max size per log file before rotation
        backup_count: Number of backup files to keep
        suppress_noisy: Quiet down Kafka client loggers

    Returns:
        Configured logger instance
    """
    log_dir = log_dir or DEFAULT_LOG_DIR
    log_file = get_log_file_path(log_dir, name)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    if json_format:
        file_formatter: logging.Formatter = JSONFormatter()
    else:
        file_formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
        )

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(file_level)
    file_handler.setFormatter(file_formatter)

    if sys.platform == "win32":
        safe_stdout = io.TextIOWrapper(
            sys.stdout.buffer, encoding="utf-8", errors="replace"
        )
        console_handler = logging.StreamHandler(safe_stdout)
    else:
        console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(ConsoleFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter

    # Remove existing handlers to avoid duplicates on re-init
    root_logger.handlers.clear()
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    if suppress_noisy:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    logger = logging.getLogger(name)
    logger.debug(f"Logging initialized: file={log_file}, json={json_format}")
    return logger
