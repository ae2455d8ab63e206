"""Structured logging for the credit and voucher service.

JSON lines in production, a readable single-line format in development.
Ledger and voucher code paths attach identifiers (user, teacher, batch,
voucher code) through ``extra`` so that a single issuance or redemption can
be traced across log lines.
"""
import logging
import json
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import traceback


# Fields copied from ``extra`` onto the JSON record when present.
CONTEXT_FIELDS = (
    "request_id",
    "user_id",
    "teacher_id",
    "voucher_code",
    "batch_id",
    "class_id",
    "support_id",
    "method",
    "path",
    "status_code",
    "duration_ms",
    "error_type",
    "operation",
    "store_backend",
)


class JSONFormatter(logging.Formatter):
    """Render each record as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_obj["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info)
            }

        for attr in CONTEXT_FIELDS:
            if hasattr(record, attr):
                log_obj[attr] = getattr(record, attr)

        return json.dumps(log_obj, default=str)


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that merges a fixed context into every record.

    Example:
        >>> logger = ContextLogger(base_logger, {"batch_id": "B-1"})
        >>> logger.info("Voucher persisted", extra={"voucher_code": "AB12CD34"})
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(self.extra)
        extra.update(kwargs.get("extra", {}))
        kwargs["extra"] = extra
        return msg, kwargs


DEV_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def setup_logging(level: str = "INFO", json_format: bool = True) -> logging.Logger:
    """Point the root logger at stdout with a single handler.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Emit JSON lines instead of the development format

    Returns:
        The configured root logger
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter() if json_format else logging.Formatter(DEV_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)
    return root


def get_logger(name: str, context: Optional[Dict[str, Any]] = None) -> logging.Logger:
    """Return a module logger, wrapped in a ContextLogger when context is given."""
    base = logging.getLogger(name)
    return ContextLogger(base, context) if context else base


class LogTimer:
    """Log the duration of a block under an ``operation`` name.

    Example:
        >>> with LogTimer(logger, "issue_vouchers", teacher_id=teacher_id):
        ...     await service.issue_vouchers(...)
    """

    def __init__(self, logger: logging.Logger, operation: str, **context: Any):
        self.logger = logger
        self.operation = operation
        self.context = context
        self._started: Optional[float] = None

    def __enter__(self):
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._started is None:
            return False
        elapsed = (time.perf_counter() - self._started) * 1000
        extra = {"operation": self.operation, "duration_ms": round(elapsed, 2), **self.context}
        if exc_type is None:
            self.logger.info(f"{self.operation} took {elapsed:.1f}ms", extra=extra)
        else:
            extra["error_type"] = exc_type.__name__
            self.logger.warning(f"{self.operation} aborted after {elapsed:.1f}ms", extra=extra)
        return False


# Plain console output until main.py reconfigures from settings
setup_logging(level="INFO", json_format=False)
