"""
Logging module for Room Recorder.
Provides structured logging with file rotation and colored console output.
"""

import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


# ANSI color codes for console output
class Colors:
    RESET = "\033[0m"
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    MAGENTA = "\033[95m"
    CYAN = "\033[96m"
    GRAY = "\033[90m"


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for console output."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.GRAY,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.MAGENTA,
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, Colors.RESET)
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')

        scope = getattr(record, 'scope', None)
        scope_str = f"{Colors.CYAN}[{scope}]{Colors.RESET} " if scope else ""

        level_str = f"{color}{record.levelname:8}{Colors.RESET}"
        message = f"{Colors.GRAY}{timestamp}{Colors.RESET} {level_str} {scope_str}{record.getMessage()}"

        if record.exc_info:
            message += f"\n{indent(self.formatException(record.exc_info))}"

        return message


class FileFormatter(logging.Formatter):
    """Plain formatter for file output."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')
        scope = getattr(record, 'scope', None) or '-'

        message = f"{timestamp} | {record.levelname:8} | {scope:24} | {record.getMessage()}"

        if record.exc_info:
            message += f"\n{indent(self.formatException(record.exc_info))}"

        return message


class ScopedLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds a scope (participant, track, file) to log messages."""

    def __init__(self, logger: logging.Logger, scope: str):
        super().__init__(logger, {'scope': scope})

    def process(self, msg, kwargs):
        kwargs.setdefault('extra', {})
        kwargs['extra']['scope'] = self.extra['scope']
        return msg, kwargs


def indent(text: str, prefix: str = "  ") -> str:
    """Indent every line of a (multi-line) message, used for stack traces."""
    return '\n'.join(f"{prefix}{line}" for line in text.split('\n'))


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size_mb: int = 10,
    backup_count: int = 5,
    stream=None
) -> logging.Logger:
    """
    Set up the main application logger.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_file: Path to log file. If None, logs only to console.
        max_size_mb: Maximum log file size before rotation.
        backup_count: Number of backup log files to keep.
        stream: Console stream. Defaults to stdout.

    Returns:
        Configured logger instance.
    """
    logger = logging.getLogger('room_recorder')
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    logger.handlers.clear()

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setFormatter(ColoredFormatter())
    console_handler.setLevel(logging.DEBUG)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(FileFormatter())
        file_handler.setLevel(logging.DEBUG)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get the application logger.

    Args:
        name: Optional name for child logger.

    Returns:
        Logger instance.
    """
    if name:
        return logging.getLogger(f'room_recorder.{name}')
    return logging.getLogger('room_recorder')


def get_scoped_logger(scope: str, name: Optional[str] = None) -> ScopedLoggerAdapter:
    """
    Get a logger adapter for a specific scope.

    Args:
        scope: Participant identity, track or file the messages refer to.
        name: Optional child logger name.

    Returns:
        ScopedLoggerAdapter with scope context.
    """
    return ScopedLoggerAdapter(get_logger(name), scope)
