"""
Facility Harvester - Logging Configuration

Provides structured JSON logging with file rotation, sensitive data censoring,
and contextual information. Designed for long unattended harvest runs where
the log file is the main record of what happened to each work item.

Features:
    - JSON structured logging for easy parsing
    - Automatic file rotation by size
    - Sensitive data censoring (session cookies, tokens, passwords)
    - Per-task contextual extras (item IDs, processor names)
    - Console and file handlers

Usage:
    from config.logging import setup_logging, get_logger

    # Initialize at application start
    setup_logging()

    # Get a logger for a module
    logger = get_logger(__name__)
    logger.info("Item completed", extra={"item_id": "NJ1A006"})
"""

import json
import logging
import logging.handlers
import re
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

from config.settings import Settings, get_settings


# =============================================================================
# Sensitive Data Patterns
# =============================================================================

# Patterns to censor in log output
SENSITIVE_PATTERNS = [
    (re.compile(r'(password["\']?\s*[:=]\s*["\']?)[^"\'&\s]+', re.I), r'\1[REDACTED]'),
    (re.compile(r'(api_key["\']?\s*[:=]\s*["\']?)[^"\'&\s]+', re.I), r'\1[REDACTED]'),
    (re.compile(r'(secret["\']?\s*[:=]\s*["\']?)[^"\'&\s]+', re.I), r'\1[REDACTED]'),
    (re.compile(r'(token["\']?\s*[:=]\s*["\']?)[^"\'&\s]+', re.I), r'\1[REDACTED]'),
    (re.compile(r'(ASP\.NET_SessionId=)[^;\s"]+', re.I), r'\1[REDACTED]'),
    (re.compile(r'(JSESSIONID=)[^;\s"]+', re.I), r'\1[REDACTED]'),
    (re.compile(r'(Bearer\s+)[A-Za-z0-9._-]+', re.I), r'\1[REDACTED]'),
]


def censor_sensitive_data(text: str) -> str:
    """
    Remove sensitive data from text using pattern matching.

    Args:
        text: Text that may contain sensitive data

    Returns:
        Text with sensitive data redacted
    """
    if not isinstance(text, str):
        return text

    result = text
    for pattern, replacement in SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


# =============================================================================
# Custom Formatter
# =============================================================================

class JSONFormatter(logging.Formatter):
    """
    JSON log formatter for structured logging.

    Outputs each log record as a single JSON line with:
        - timestamp (ISO 8601)
        - level
        - logger name
        - message
        - extra fields from the record
        - exception info if present
    """

    # Fields that are part of LogRecord but shouldn't be in extras
    RESERVED_ATTRS = {
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "pathname", "process", "processName", "relativeCreated",
        "stack_info", "exc_info", "exc_text", "thread", "threadName",
        "taskName", "message",
    }

    def __init__(self, include_extras: bool = True, censor_sensitive: bool = True):
        """
        Initialize the formatter.

        Args:
            include_extras: Include extra fields from the log record
            censor_sensitive: Censor sensitive data in output
        """
        super().__init__()
        self.include_extras = include_extras
        self.censor_sensitive = censor_sensitive

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as JSON."""
        log_entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add location info for warnings and above
        if record.levelno >= logging.WARNING:
            log_entry["location"] = {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName,
            }

        if self.include_extras:
            extras = {}
            for key, value in record.__dict__.items():
                if key not in self.RESERVED_ATTRS and not key.startswith("_"):
                    try:
                        # Ensure value is JSON serializable
                        json.dumps(value)
                        extras[key] = value
                    except (TypeError, ValueError):
                        extras[key] = str(value)

            if extras:
                log_entry["extra"] = extras

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        json_str = json.dumps(log_entry, default=str, ensure_ascii=False)

        if self.censor_sensitive:
            json_str = censor_sensitive_data(json_str)

        return json_str


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable console formatter with colors.

    Format: TIMESTAMP | LEVEL | LOGGER | MESSAGE [extras]
    """

    # ANSI color codes
    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[41m",  # Red background
    }
    RESET = "\033[0m"

    RESERVED_ATTRS = JSONFormatter.RESERVED_ATTRS

    def __init__(self, use_colors: bool = True, censor_sensitive: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()
        self.censor_sensitive = censor_sensitive

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record for console output."""
        timestamp = datetime.fromtimestamp(
            record.created, tz=timezone.utc
        ).strftime("%Y-%m-%d %H:%M:%S")

        level = record.levelname
        if self.use_colors:
            color = self.COLORS.get(level, "")
            level = f"{color}{level:8}{self.RESET}"
        else:
            level = f"{level:8}"

        logger_name = record.name
        if len(logger_name) > 25:
            logger_name = "..." + logger_name[-22:]

        message = record.getMessage()

        extras = []
        for key, value in record.__dict__.items():
            if key not in self.RESERVED_ATTRS and not key.startswith("_"):
                extras.append(f"{key}={value}")

        extra_str = ""
        if extras:
            extra_str = f" [{', '.join(extras)}]"

        output = f"{timestamp} | {level} | {logger_name:25} | {message}{extra_str}"

        if record.exc_info and record.exc_info[0] is not None:
            output += "\n" + "".join(traceback.format_exception(*record.exc_info))

        if self.censor_sensitive:
            output = censor_sensitive_data(output)

        return output


# =============================================================================
# Log Context
# =============================================================================

_log_context: ContextVar[dict[str, Any]] = ContextVar("harvest_log_context", default={})


class LogContext:
    """
    Context manager for adding contextual information to logs.

    Backed by a ContextVar, so every asyncio task sees only the fields it
    set itself; concurrent workers do not leak item IDs into each other.

    Usage:
        with LogContext(item_id="NJ1A006", processor="nj"):
            logger.info("Processing")  # Will include item_id and processor
    """

    def __init__(self, **kwargs: Any):
        self.fields = kwargs
        self._token = None

    def __enter__(self) -> "LogContext":
        """Enter context and add fields."""
        merged = {**_log_context.get(), **self.fields}
        self._token = _log_context.set(merged)
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context and restore previous fields."""
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None

    @classmethod
    def get_context(cls) -> dict[str, Any]:
        """Get current context fields."""
        return dict(_log_context.get())


class ContextFilter(logging.Filter):
    """Filter that adds context fields to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add context fields to the record."""
        for key, value in LogContext.get_context().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


# =============================================================================
# Log Setup Functions
# =============================================================================

def setup_logging(
    log_level: Optional[str] = None,
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> None:
    """
    Configure application logging.

    Sets up both console and file handlers with appropriate formatters.
    Should be called once at application startup.

    Args:
        log_level: Override settings log level
        log_file: Override settings log file path
        log_format: Override settings log format (json or text)
        settings: Settings to read defaults from (defaults to get_settings())
    """
    settings = settings or get_settings()

    level = getattr(logging, (log_level or settings.log_level).upper())
    file_path = log_file or settings.get_log_file_path()
    format_type = (log_format or settings.log_format).lower()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    context_filter = ContextFilter()

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.addFilter(context_filter)

    if format_type == "json":
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(ConsoleFormatter())

    root_logger.addHandler(console_handler)

    # File handler (if configured)
    if file_path:
        file_path_obj = settings.project_root / file_path

        file_path_obj.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            file_path_obj,
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.addFilter(context_filter)

        # Always use JSON for file logging (easier to parse)
        file_handler.setFormatter(JSONFormatter())

        root_logger.addHandler(file_handler)

    # Configure third-party loggers to be less verbose
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logger = get_logger(__name__)
    logger.debug(
        "Logging initialized",
        extra={
            "level": logging.getLevelName(level),
            "file": str(file_path) if file_path else None,
            "format": format_type,
        },
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Logger name, typically __name__

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "setup_logging",
    "get_logger",
    "LogContext",
    "ContextFilter",
    "JSONFormatter",
    "ConsoleFormatter",
    "censor_sensitive_data",
]
