import logging
import sys
import re
import json
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional
import pytz

from core import constants


class SensitiveDataFilter(logging.Filter):
    """Filter to mask tokens and authorization headers in logs"""

    PATTERNS = [
        (r"((?:Token|Bearer)\s+)[A-Za-z0-9_.\-]{16,}", r"\1***MASKED***"),
        (r"(KT_TOKEN=)\S+", r"\1***MASKED***"),
        (r"('Authorization':\s*')[^']+(')", r"\1***MASKED***\2"),
    ]

    def __init__(self, secrets: Optional[List[str]] = None):
        super().__init__()
        self.secrets = [s for s in (secrets or []) if s]

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._mask_sensitive(record.msg)

        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                self._mask_sensitive(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True

    def _mask_sensitive(self, text: str) -> str:
        for secret in self.secrets:
            text = text.replace(secret, "***MASKED***")
        for pattern, replacement in self.PATTERNS:
            text = re.sub(pattern, replacement, text)
        return text


class ZonedFormatter(logging.Formatter):
    """Formatter rendering timestamps in a configured timezone, with structured context"""

    def __init__(self, fmt=None, datefmt=None, timezone: str = constants.DEFAULT_LOG_TIMEZONE):
        super().__init__(fmt, datefmt)
        self.tz = pytz.timezone(timezone)

    def converter(self, timestamp):
        return datetime.fromtimestamp(timestamp, tz=pytz.utc).astimezone(self.tz)

    def formatTime(self, record, datefmt=None):
        dt = self.converter(record.created)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat(timespec="milliseconds")

    def format(self, record):
        base_msg = super().format(record)

        if getattr(record, "context", None):
            context_str = " | ".join(f"{k}={v}" for k, v in record.context.items())
            base_msg = f"{base_msg} | {context_str}"

        if getattr(record, "duration_ms", None) is not None:
            return f"{base_msg} | {record.duration_ms:.2f}ms"
        if getattr(record, "duration", None) is not None:
            return f"{base_msg} | {record.duration:.2f}s"

        return base_msg


class StructuredLoggerAdapter(logging.LoggerAdapter):
    """Adapter to add structured context to log messages"""

    def process(self, msg, kwargs):
        extra = kwargs.setdefault("extra", {})
        extra["context"] = kwargs.pop("context", {})

        if "duration" in kwargs:
            extra["duration"] = kwargs.pop("duration")
        if "duration_ms" in kwargs:
            extra["duration_ms"] = kwargs.pop("duration_ms")

        return msg, kwargs


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def __init__(self, timezone: str = constants.DEFAULT_LOG_TIMEZONE):
        super().__init__()
        self.tz = pytz.timezone(timezone)

    def format(self, record):
        log_record = {
            "timestamp": datetime.fromtimestamp(record.created, tz=pytz.utc)
            .astimezone(self.tz)
            .isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
        }

        if getattr(record, "context", None):
            log_record["context"] = record.context
        if getattr(record, "duration", None) is not None:
            log_record["duration_seconds"] = record.duration
        if getattr(record, "duration_ms", None) is not None:
            log_record["duration_ms"] = record.duration_ms

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_record, ensure_ascii=False, default=str)


def get_logger(name: str) -> StructuredLoggerAdapter:
    """
    Get a logger below the package root logger.
    Handlers live on the root logger configured by setup_logging().
    """
    if name != constants.ROOT_LOGGER_NAME and not name.startswith(f"{constants.ROOT_LOGGER_NAME}."):
        name = f"{constants.ROOT_LOGGER_NAME}.{name}"
    return StructuredLoggerAdapter(logging.getLogger(name), {})


def setup_logging(
    log_level: str = constants.DEFAULT_LOG_LEVEL,
    log_file: Optional[str] = None,
    log_format: str = constants.DEFAULT_LOG_FORMAT,
    timezone: str = constants.DEFAULT_LOG_TIMEZONE,
    max_bytes: int = constants.DEFAULT_LOG_MAX_BYTES,
    backup_count: int = constants.DEFAULT_LOG_BACKUP_COUNT,
    secrets: Optional[List[str]] = None,
) -> logging.Logger:
    """
    Configure the package root logger with console and rotating file handlers.
    Calling it again replaces the previous handlers (e.g. once the run log dir exists).
    """
    root = logging.getLogger(constants.ROOT_LOGGER_NAME)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    sensitive_filter = SensitiveDataFilter(secrets)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(root.level)
    console_handler.setFormatter(
        ZonedFormatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            timezone=timezone,
        )
    )
    console_handler.addFilter(sensitive_filter)
    root.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        if log_format.lower() == "json":
            file_handler.setFormatter(JSONFormatter(timezone=timezone))
        else:
            file_handler.setFormatter(
                ZonedFormatter(
                    "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s",
                    datefmt="%Y-%m-%d %H:%M:%S",
                    timezone=timezone,
                )
            )
        file_handler.addFilter(sensitive_filter)
        root.addHandler(file_handler)
        # file gets all levels, console keeps the configured one
        root.setLevel(logging.DEBUG)

    root.propagate = False
    return root
