"""
Centralized logging module for Stakehouse.
Provides colored console output, JSON output for log shippers,
and optional file logging with rotation.
"""

import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional

import orjson


# ANSI color codes for console output
class Colors:
    RESET = "\033[0m"
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    MAGENTA = "\033[95m"
    CYAN = "\033[96m"
    GRAY = "\033[90m"


# Attributes every LogRecord carries; anything else came in through `extra=`
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
}


def _extra_fields(record: logging.LogRecord) -> dict:
    return {k: v for k, v in record.__dict__.items() if k not in _RECORD_ATTRS}


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colored output for console."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.GRAY,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.MAGENTA,
    }

    def format(self, record):
        color = self.LEVEL_COLORS.get(record.levelno, Colors.RESET)
        timestamp = self.formatTime(record, "%Y-%m-%d %H:%M:%S")

        level = f"{color}{record.levelname:<8}{Colors.RESET}"
        name = f"{Colors.CYAN}{record.name}{Colors.RESET}"
        message = record.getMessage()

        # Wager context (wager_id, account_id, state...) rendered as key=value
        extras = _extra_fields(record)
        if extras:
            context = " ".join(f"{k}={v}" for k, v in extras.items())
            message = f"{message} {Colors.GRAY}[{context}]{Colors.RESET}"

        line = f"{Colors.GRAY}{timestamp}{Colors.RESET} | {level} | {name} | {message}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class PlainFormatter(logging.Formatter):
    """Plain formatter for file output (no colors)."""

    def format(self, record):
        timestamp = self.formatTime(record, "%Y-%m-%d %H:%M:%S")
        line = f"{timestamp} | {record.levelname:<8} | {record.name} | {record.getMessage()}"
        extras = _extra_fields(record)
        if extras:
            line += " [" + " ".join(f"{k}={v}" for k, v in extras.items()) + "]"
        return line


class JsonFormatter(logging.Formatter):
    """Formatter for structured logging in JSON format."""

    def format(self, record):
        log_record = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)

        log_record.update(_extra_fields(record))

        # Decimal amounts and other non-native values fall back to str
        return orjson.dumps(log_record, default=str).decode("utf-8")


def setup_logger(
    name: str = "stakehouse",
    level: str = "INFO",
    log_to_file: bool = False,
    log_file_path: Optional[Path] = None,
    max_file_size: int = 5 * 1024 * 1024,  # 5MB
    backup_count: int = 3,
    formatter: str = "color",
) -> logging.Logger:
    """
    Set up and configure a logger.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_to_file: Whether to also log to a file
        log_file_path: Path for log file (defaults to data/app.log)
        max_file_size: Max size of log file before rotation
        backup_count: Number of backup files to keep
        formatter: "color" or "json" for the console handler

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Re-initialisation replaces handlers rather than stacking them
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    if formatter == "json":
        console_handler.setFormatter(JsonFormatter())
    else:
        console_handler.setFormatter(ColoredFormatter())
    logger.addHandler(console_handler)

    if log_to_file:
        try:
            if log_file_path is None:
                log_file_path = Path(__file__).parent.parent.parent / "data" / "app.log"

            log_file_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = RotatingFileHandler(
                log_file_path, maxBytes=max_file_size, backupCount=backup_count
            )
            file_handler.setFormatter(PlainFormatter())
            logger.addHandler(file_handler)
        except (OSError, PermissionError) as e:
            sys.stderr.write(f"WARNING: Could not set up file logging: {e}\n")
            sys.stderr.write("Continuing with console logging only.\n")

    logger.propagate = False

    return logger


_app_logger: Optional[logging.Logger] = None


def get_logger(name: str = None) -> logging.Logger:
    """
    Get a logger instance. If name is provided, returns a child logger.

    Args:
        name: Optional sub-logger name (e.g., "ledger", "settlement")
    """
    global _app_logger

    if _app_logger is None:
        _app_logger = setup_logger()

    if name:
        return _app_logger.getChild(name)
    return _app_logger


def init_logging(
    level: str = "INFO",
    log_to_file: bool = False,
    formatter: str = "color",
    log_file_path: Optional[Path] = None,
):
    """
    Initialize the application logging system.
    Should be called once at application startup.
    """
    global _app_logger
    _app_logger = setup_logger(
        level=level,
        log_to_file=log_to_file,
        log_file_path=log_file_path,
        formatter=formatter,
    )
    _app_logger.info(f"Logging initialized at {level} level")
