"""JSON structured logging with mandatory fields and recipient redaction."""
import json
import logging
import re
import sys
import threading
from datetime import UTC, datetime
from typing import Optional

from backend.core.config import settings

# Thread-local storage for context
_context = threading.local()

_RESERVED = frozenset(
    (
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
        "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
        "created", "msecs", "relativeCreated", "thread", "threadName",
        "processName", "process", "message", "taskName",
    )
)


class JSONFormatter(logging.Formatter):
    """JSON formatter with mandatory fields and email redaction."""

    email_pattern = re.compile(r"(\b[\w.+-]+@[\w-]+\.[\w.-]+\b)")

    def _redact(self, text):
        if not isinstance(text, str):
            return text
        return self.email_pattern.sub(self._mask_email, text)

    @staticmethod
    def _mask_email(match) -> str:
        """Mask email: keep first char of the local part and the domain."""
        user, domain = match.group(1).split("@", 1)
        masked_user = "*" if len(user) <= 1 else user[0] + "*" * (len(user) - 1)
        return f"{masked_user}@{domain}"

    def format(self, record):
        log_entry = {
            "trace_id": getattr(_context, "trace_id", None) or "unknown",
            "logger": record.name,
            "level": record.levelname.lower(),
            "msg": self._redact(record.getMessage()),
            "ts_utc": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        }

        if record.exc_info:
            log_entry["exc_info"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED or key in log_entry:
                continue
            log_entry[key] = self._redact(value)

        return json.dumps(log_entry, default=str)


def set_trace_id(trace_id: Optional[str]) -> None:
    """Set trace ID for current thread context."""
    _context.trace_id = trace_id


def get_trace_id() -> Optional[str]:
    return getattr(_context, "trace_id", None)


def init_logging() -> None:
    """Initialize JSON logging on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get logger with JSON formatting."""
    return logging.getLogger(name)


# Convenience logger
logger = get_logger("credit_control")
