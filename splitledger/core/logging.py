"""
Structured Logging

JSON log lines carrying the request's correlation id and the acting user id,
so every settlement step of one request can be traced across the API and the
workers. Extra fields go in ``extra_data``; Decimals are written as exact strings.
"""
import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
# Authenticated user id for the current request (empty in workers)
actor_id_var: ContextVar[str] = ContextVar("actor_id", default="")


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }
        for key, var in (("correlation_id", correlation_id_var), ("actor_id", actor_id_var)):
            value = var.get()
            if value:
                entry[key] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if hasattr(record, "extra_data"):
            entry["extra"] = record.extra_data
        # str() keeps Decimal amounts exact
        return json.dumps(entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.Logger):
    """Every level method also takes ``extra_data``"""

    def _log(self, level, msg, args, exc_info=None, extra=None, stack_info=False, stacklevel=1, extra_data=None):
        if extra_data:
            extra = {**(extra or {}), "extra_data": extra_data}
        super()._log(
            level, msg, args,
            exc_info=exc_info, extra=extra, stack_info=stack_info, stacklevel=stacklevel + 1,
        )


logging.setLoggerClass(StructuredLogger)


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    handler = logging.StreamHandler(sys.stdout)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    for noisy in ("httpx", "httpcore", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def set_correlation_id(correlation_id: str | None = None) -> str:
    cid = correlation_id or uuid.uuid4().hex[:8]
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    return correlation_id_var.get() or set_correlation_id()


def set_actor_id(user_id: str | None) -> None:
    actor_id_var.set(user_id or "")


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore[return-value]


def log_async_operation(operation_name: str):
    """
    Log start, completion and duration of a service call. Business
    rejections (AppException) log as warnings, anything else as an error
    with traceback.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            from splitledger.core.exceptions import AppException

            logger = get_logger(func.__module__)
            started = time.perf_counter()
            logger.debug(f"Starting {operation_name}", extra_data={"operation": operation_name, "status": "started"})
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                expected = isinstance(e, AppException)
                logger.log(
                    logging.WARNING if expected else logging.ERROR,
                    f"Failed {operation_name}: {e}",
                    extra_data={
                        "operation": operation_name,
                        "status": "failed",
                        "duration_seconds": time.perf_counter() - started,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                    exc_info=not expected,
                )
                raise

            logger.info(
                f"Completed {operation_name}",
                extra_data={
                    "operation": operation_name,
                    "status": "completed",
                    "duration_seconds": time.perf_counter() - started,
                },
            )
            return result

        return wrapper
    return decorator
