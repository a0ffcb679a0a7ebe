"""
Centralized logging configuration.
Structured (JSON) or human-readable console/file logging for every
backup, restore, health and failover component.
"""

import json
import logging
import logging.config
import sys
from collections.abc import MutableMapping
from datetime import datetime, timezone
from functools import cache
from pathlib import Path
from typing import Any

import yaml

from .config import get_settings

_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info",
    "getMessage", "message", "taskName",
})

_DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_logging_config_applied = False


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Context passed through `extra=` or a LoggerAdapter
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output."""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with colors."""
        original = record.levelname
        if original in self.COLORS:
            record.levelname = f"{self.COLORS[original]}{original}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


def _apply_logging_yaml(cfg_path: Path) -> bool:
    global _logging_config_applied
    if _logging_config_applied:
        return True

    try:
        config_dict = yaml.safe_load(cfg_path.read_text(encoding="utf-8"))
        logging.config.dictConfig(config_dict)
    except (OSError, yaml.YAMLError, ValueError, TypeError) as e:
        sys.stderr.write(f"Ignoring invalid logging config {cfg_path}: {e}\n")
        return False

    _logging_config_applied = True
    return True


def setup_logging(
    name: str,
    level: str | None = None,
    log_file: Path | None = None,
    use_json: bool | None = None,
) -> logging.Logger:
    """
    Set up logging for a module.

    Args:
        name: Logger name (usually __name__)
        level: Log level (default from settings)
        log_file: Log file path (default from settings)
        use_json: Use JSON format (default from settings)

    Returns:
        Configured logger instance
    """
    cfg_path = Path("config/logging.yaml")
    if cfg_path.exists() and _apply_logging_yaml(cfg_path):
        return logging.getLogger(name)

    settings = get_settings()
    logger = logging.getLogger(name)

    level = level or settings.log_level
    log_file = log_file or settings.log_file_path
    use_json = use_json if use_json is not None else (settings.log_format == "json")

    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(log_level)
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)

    console_formatter: JSONFormatter | logging.Formatter
    if use_json:
        console_formatter = JSONFormatter()
    elif sys.stdout.isatty():
        console_formatter = ColoredFormatter(_DEFAULT_FORMAT)
    else:
        console_formatter = logging.Formatter(_DEFAULT_FORMAT)

    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(JSONFormatter() if use_json else logging.Formatter(_DEFAULT_FORMAT))
        logger.addHandler(file_handler)

    logger.propagate = False

    return logger


@cache
def get_logger(name: str) -> logging.Logger:
    """
    Get or create a logger with default configuration.
    Cached to avoid recreating loggers.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger instance
    """
    return setup_logging(name)


class LoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that merges fixed context (job id, strategy) into every record."""

    def __init__(self, logger: logging.Logger, extra: dict[str, Any]) -> None:
        super().__init__(logger, extra)

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        """Process log message and add extra context."""
        if "extra" not in kwargs:
            kwargs["extra"] = {}
        kwargs["extra"].update(self.extra)
        return msg, kwargs


def get_logger_with_context(name: str, **context: Any) -> LoggerAdapter:
    """
    Get a logger with additional context.

    Args:
        name: Logger name
        **context: Additional context to include in logs

    Returns:
        Logger adapter with context
    """
    return LoggerAdapter(get_logger(name), context)
