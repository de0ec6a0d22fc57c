import logging
import sys
import os
from typing import Dict, Any, Optional
import json
from datetime import datetime, timezone
import contextlib
import contextvars
from pathlib import Path

from app.core.config import settings

# Fields stamped onto every record emitted inside a log_context block
log_fields = contextvars.ContextVar("log_fields", default={})


class JsonFormatter(logging.Formatter):
    """
    Formatter that renders each record as a single JSON object.

    Structured fields come from three places: the record itself, the
    ``extras`` dict passed through ``extra=``, and the active log_context.
    """

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(self._prepare_log_dict(record), default=str)

    def _prepare_log_dict(self, record: logging.LogRecord) -> Dict[str, Any]:
        record_dict = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            record_dict["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extras"):
            for key, value in record.extras.items():
                record_dict[key] = value

        for key, value in log_fields.get().items():
            record_dict.setdefault(key, value)

        return record_dict


class ContextFilter(logging.Filter):
    """Copies the active log_context fields onto the record."""

    def filter(self, record):
        for key, value in log_fields.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def setup_logging(level: Optional[str] = None):
    """
    Set up logging for the application.

    Args:
        level: Optional log level override (default to settings)
    """
    log_level = getattr(logging, level or settings.LOG_LEVEL)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    context_filter = ContextFilter()

    console_handler = logging.StreamHandler(sys.stdout)

    if settings.ENVIRONMENT == "production":
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "[%(asctime)s] [%(levelname)s] %(name)s (%(filename)s:%(lineno)d) - %(message)s"
        )

    console_handler.setFormatter(formatter)
    console_handler.setLevel(log_level)
    console_handler.addFilter(context_filter)
    root_logger.addHandler(console_handler)

    if settings.LOG_FILE:
        try:
            log_dir = Path(settings.LOG_FILE).parent
            os.makedirs(log_dir, exist_ok=True)

            file_handler = logging.FileHandler(settings.LOG_FILE)
            file_handler.setFormatter(formatter)
            file_handler.setLevel(log_level)
            file_handler.addFilter(context_filter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            root_logger.error(f"Error setting up file logging: {e}")

    # Third-party clients are chatty at INFO
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)

    return logging.getLogger("app")


@contextlib.contextmanager
def log_context(**fields):
    """
    Attach structured fields to every log record emitted inside the block.

    Usage:
        with log_context(user_id=123, provider="github"):
            logger.info("Sync started")
    """
    merged = {**log_fields.get(), **fields}
    token = log_fields.set(merged)
    try:
        yield
    finally:
        log_fields.reset(token)
