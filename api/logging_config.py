"""
Logging configuration for the submission pipeline.
Provides structured logging with proper formatting.
"""

import sys
import logging
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from api.config import config


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for console output."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def format(self, record):
        # Format a copy so file handlers sharing the record keep a plain level name.
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


def setup_logging(name: str = "autoapply", log_dir: Optional[str] = None) -> logging.Logger:
    """
    Setup and return a configured logger.

    Args:
        name: Logger name (default: autoapply)
        log_dir: Directory for the log files (default: config.LOG_DIR)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, config.LOG_LEVEL.upper(), logging.INFO))

    # Console handler with colors
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_format = ColoredFormatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(console_format)
    logger.addHandler(console_handler)

    log_dir = Path(log_dir or config.LOG_DIR)
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.warning(f"File logging disabled, cannot create {log_dir}: {e}")
        return logger

    # File handler with rotation
    file_handler = RotatingFileHandler(
        log_dir / f"{name}.log",
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5
    )
    file_handler.setLevel(logging.DEBUG)
    file_format = logging.Formatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(funcName)s:%(lineno)d | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    file_handler.setFormatter(file_format)
    logger.addHandler(file_handler)

    # Error file handler (errors and above)
    error_handler = RotatingFileHandler(
        log_dir / f"{name}_errors.log",
        maxBytes=10 * 1024 * 1024,
        backupCount=5
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(file_format)
    logger.addHandler(error_handler)

    return logger


# Create default logger
logger = setup_logging()


def log_submission(item_id: str, user_id: str, job_external_id: str, status: str, error: Optional[str] = None):
    """Log a work item status change."""
    extra = {"user_id": user_id, "job_external_id": job_external_id}
    if error:
        logger.error(f"WorkItem {item_id} -> {status}: {error}", extra=extra)
    else:
        logger.info(f"WorkItem {item_id} -> {status}", extra=extra)


def log_rate_limit(user_id: str, action: str, retry_after: datetime):
    """Log a local rate limit denial."""
    logger.warning(f"Rate limit exceeded for user {user_id}, action: {action}; next refill at {retry_after.isoformat()}")
