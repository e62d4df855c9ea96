import logging
import re
import sys
import threading
import json
from typing import Any
from datetime import datetime, timezone
import os


REDACTED = "[REDACTED]"

# Keys whose values are never written to a log line
SENSITIVE_KEYS = (
    "value",
    "plaintext",
    "password",
    "secret_value",
    "token",
    "master_key",
    "key_material",
    "value_encrypted",
    "ciphertext",
)

SENSITIVE_PATTERNS = [
    # key=value / key: value pairs with a sensitive-looking key
    re.compile(
        r"(?i)\b(password|secret_value|token|api[_-]?key|access[_-]?key|authorization|bearer|plaintext)\b([=:\s]+)([^\s,}]+)"
    ),
    # Stored ciphertext, "<keyVersion>:<base64>"
    re.compile(r"\b\d+:[A-Za-z0-9+/]{24,}={0,2}"),
    # Hex key material
    re.compile(r"\b[0-9a-fA-F]{64}\b"),
]


def redact(message: str) -> str:
    for pattern in SENSITIVE_PATTERNS:
        if pattern.groups:
            message = pattern.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", message)
        else:
            message = pattern.sub(REDACTED, message)
    return message


def sanitize(fields: dict[str, Any]) -> dict[str, Any]:
    sanitized = {}
    for key, value in fields.items():
        if key.lower() in SENSITIVE_KEYS:
            sanitized[key] = REDACTED
        elif isinstance(value, dict):
            sanitized[key] = sanitize(value)
        elif isinstance(value, str):
            sanitized[key] = redact(value)
        else:
            sanitized[key] = value
    return sanitized


class SecretRedactionFilter(logging.Filter):
    """Strips secret values out of log records before any handler formats them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = sanitize(record.args)
            else:
                record.args = tuple(redact(a) if isinstance(a, str) else a for a in record.args)
        if hasattr(record, "extra_fields"):
            record.extra_fields = sanitize(record.extra_fields)
        return True


class StructuredFormatter(logging.Formatter):
    """Custom formatter that outputs structured JSON logs"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Context set through LogContext
        for attr in ("secret_id", "project_id", "sweep_id"):
            if hasattr(record, attr):
                log_data[attr] = str(getattr(record, attr))

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": redact(str(record.exc_info[1])),
                "traceback": self.formatException(record.exc_info)
            }

        return json.dumps(log_data, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored formatter for local development"""

    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        message = super().format(record)
        if hasattr(record, 'extra_fields') and record.extra_fields:
            message = f"{message} {json.dumps(record.extra_fields, default=str)}"
        return message


def setup_logging(log_level: str = None, json_logs: bool = None):
    """Configure logging for the application"""

    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    if json_logs is None:
        json_logs = os.getenv("JSON_LOGS", "false").lower() == "true"

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.addFilter(SecretRedactionFilter())

    if json_logs:
        formatter = StructuredFormatter()
    else:
        formatter = ColoredFormatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Set specific logger levels to reduce noise
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with additional context methods"""
    logger = logging.getLogger(name)

    def log_with_context(level: int, msg: str, **kwargs):
        extra = {}
        if kwargs:
            extra['extra_fields'] = kwargs
        logger.log(level, msg, extra=extra)

    logger.debug_ctx = lambda msg, **kw: log_with_context(logging.DEBUG, msg, **kw)
    logger.info_ctx = lambda msg, **kw: log_with_context(logging.INFO, msg, **kw)
    logger.warning_ctx = lambda msg, **kw: log_with_context(logging.WARNING, msg, **kw)
    logger.error_ctx = lambda msg, **kw: log_with_context(logging.ERROR, msg, **kw)

    return logger


_log_context = threading.local()
_factory_lock = threading.Lock()
_base_record_factory = None


def _context_record_factory(*args, **kwargs):
    record = _base_record_factory(*args, **kwargs)
    for key, value in getattr(_log_context, "fields", {}).items():
        setattr(record, key, value)
    return record


def _install_context_factory():
    global _base_record_factory
    with _factory_lock:
        if _base_record_factory is None:
            _base_record_factory = logging.getLogRecordFactory()
            logging.setLogRecordFactory(_context_record_factory)


class LogContext:
    """Adds context to every log record the current thread emits within a block"""

    def __init__(self, **kwargs):
        self.context = kwargs
        self.previous = None

    def __enter__(self):
        _install_context_factory()
        self.previous = getattr(_log_context, "fields", {})
        _log_context.fields = {**self.previous, **self.context}
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        _log_context.fields = self.previous
