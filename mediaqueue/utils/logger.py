import logging
import json
import os
import sys
from pathlib import Path
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler


# Keys copied from `extra={...}` into structured entries
EXTRA_KEYS = (
    "method", "path", "status", "duration_ms", "client_ip",
    "error", "error_type", "job_id", "job_type", "event", "count",
    "priority", "retry_count", "in_flight", "free_slots", "policy",
    "store", "queue_key", "service", "operation", "poll_interval",
    "max_concurrent", "reason",
)


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter with correlation ID injection"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        if getattr(record, "correlation_id", None):
            entry["correlation_id"] = record.correlation_id

        for key in EXTRA_KEYS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)

        # Source location for warnings and errors
        if record.levelno >= logging.WARNING:
            entry["source"] = f"{record.filename}:{record.lineno}"

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


class SimpleFormatter(logging.Formatter):
    """Human-readable formatter for local development"""

    def __init__(self):
        super().__init__(
            '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
            datefmt='%H:%M:%S'
        )


def setup_logger(name: str = "mediaqueue", level: str = None) -> logging.Logger:
    """
    Setup application logger.

    LOG_FORMAT=json switches stdout to one JSON object per line (log drain
    ingestion). LOG_DIR additionally enables a rotating JSON log file.
    """
    logger = logging.getLogger(name)

    # Don't add handlers if they already exist
    if logger.handlers:
        return logger

    level = level or os.getenv("LOG_LEVEL", "INFO")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    structured = os.getenv("LOG_FORMAT") == "json"

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(StructuredFormatter() if structured else SimpleFormatter())
    logger.addHandler(console_handler)

    log_dir = os.getenv("LOG_DIR")
    if log_dir:
        try:
            Path(log_dir).mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                Path(log_dir) / f"{name}.log",
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
                encoding='utf-8'
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(StructuredFormatter())
            logger.addHandler(file_handler)
        except OSError as e:
            logger.warning(f"Could not setup file logging: {e}")

    return logger


# Default logger instance
logger = setup_logger()


def get_logger(name: str = None) -> logging.Logger:
    """Get a child of the application logger"""
    if name:
        return logger.getChild(name)
    return logger
