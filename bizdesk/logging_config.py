"""
Logging setup for bizdesk.

Records carry structured context in ``extra={"extra_fields": {...}}``. Both
formatters render it (JSON for aggregation, ``key=value`` for terminals) and
mask credentials so bearer tokens and passwords never reach the logs. The
request id of the BFF request being served lives in a context variable; the
API client forwards it to the backend as ``X-Request-ID``.
"""

import json
import logging
import sys
from contextvars import ContextVar
from typing import Any, Dict, Mapping, Optional
from uuid import uuid4

request_id_context: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

REDACTED = "***"
SENSITIVE_FIELDS = frozenset(
    {"token", "auth_token", "password", "password_confirmation", "authorization", "auth"}
)
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def redact(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy of ``fields`` with credential values masked."""
    return {
        key: REDACTED if key.lower() in SENSITIVE_FIELDS and value else value
        for key, value in fields.items()
    }


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    fields = getattr(record, "extra_fields", None)
    return redact(fields) if isinstance(fields, Mapping) else {}


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per record.

    Carries the service name, the request id when one is set and the
    record's ``extra_fields`` at top level.
    """

    def __init__(self, service_name: str = "bizdesk", datefmt: Optional[str] = DATE_FORMAT) -> None:
        super().__init__(datefmt=datefmt)
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "service": self.service_name,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        request_id = request_id_context.get()
        if request_id:
            log_data["request_id"] = request_id

        log_data.update(_extra_fields(record))

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Colored single-line output for development, context appended as key=value."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        parts = [
            self.formatTime(record, self.datefmt),
            f"{color}{record.levelname:8}{self.RESET}",
            f"[{record.name}]",
        ]

        request_id = request_id_context.get()
        if request_id:
            parts.append(f"[req:{request_id[:8]}]")

        parts.append(record.getMessage())
        parts.extend(f"{key}={value}" for key, value in _extra_fields(record).items())

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    log_level: str = "INFO",
    service_name: str = "bizdesk",
    use_json: bool = False,
) -> logging.Logger:
    """
    Configure the root logger with a single stdout handler.

    Args:
        log_level: Logging level name; unknown names fall back to INFO
        service_name: Service name stamped on JSON records
        use_json: JSON lines instead of the colored format

    Returns:
        The service logger
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    formatter: logging.Formatter
    if use_json:
        formatter = StructuredFormatter(service_name)
    else:
        formatter = HumanReadableFormatter(datefmt=DATE_FORMAT)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # Transport libraries log every request at INFO/DEBUG
    for noisy in ("httpx", "httpcore", "websockets", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger = logging.getLogger(service_name)
    logger.setLevel(level)
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name or "bizdesk")


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request id for the current context.

    Args:
        request_id: Id to use; a new UUID4 when None

    Returns:
        The id now in effect
    """
    if request_id is None:
        request_id = str(uuid4())
    request_id_context.set(request_id)
    return request_id


def get_request_id() -> Optional[str]:
    return request_id_context.get()


def clear_request_id() -> None:
    request_id_context.set(None)
