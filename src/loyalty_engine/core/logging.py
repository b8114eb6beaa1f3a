from __future__ import annotations

import json
import logging
from logging import LogRecord
from typing import Any, Callable, Dict, Iterable, Mapping

from loguru import logger
from opentelemetry import trace


_RESERVED_LOG_RECORD_ATTRS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
}

# Fields lifted out of ``extra`` into a nested block for each log category.
CATEGORY_FIELDS: Dict[str, tuple[str, ...]] = {
    "loyalty.pos_api": ("endpoint", "method", "status", "duration_ms", "success", "context"),
    "loyalty.qualification": ("variation_id", "quantity", "decision"),
    "loyalty.audit": ("action",),
}


class InterceptHandler(logging.Handler):
    """Route stdlib logging (httpx, sqlalchemy, apscheduler) into Loguru."""

    def emit(self, record: LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        try:
            message = record.getMessage()
        except Exception:  # pragma: no cover - malformed format strings
            message = record.msg if isinstance(record.msg, str) else str(record.msg)

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_LOG_RECORD_ATTRS
        }

        safe_message = message.replace("{", "{{").replace("}", "}}")

        bound_logger = logger.bind(**extra) if extra else logger
        bound_logger.opt(depth=6, exception=record.exc_info).log(level, safe_message)


def build_log_payload(record: Mapping[str, Any], metadata: Mapping[str, Any]) -> Dict[str, Any]:
    """Shape one Loguru record as the JSON document the log sink receives.

    Categorised records (POS calls, qualification decisions, audit staging)
    carry their fields in a block named after the category, e.g. ``pos_api``.
    """

    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["name"],
        "service": metadata.get("service_name", "unknown"),
        "environment": metadata.get("environment", "unknown"),
        "version": metadata.get("version", "unknown"),
    }

    extra = dict(record["extra"] or {})
    category = extra.pop("category", None)
    if category:
        payload["category"] = category
        fields = CATEGORY_FIELDS.get(category)
        if fields:
            block = {name: extra.pop(name) for name in fields if name in extra}
            payload[category.rsplit(".", 1)[-1]] = block
    payload.update(extra)

    if record["exception"] is not None:
        exc_type, exc_value, _ = record["exception"]
        payload["exception"] = {
            "type": exc_type.__name__ if exc_type else None,
            "message": str(exc_value) if exc_value else None,
        }
    return payload


def category_filter(level: str, debug_categories: Iterable[str]) -> Callable[[Mapping[str, Any]], bool]:
    """Pass records at ``level`` and above, plus debug records of the enabled categories."""

    threshold = logger.level(level.upper()).no
    enabled = set(debug_categories)

    def _filter(record: Mapping[str, Any]) -> bool:
        if record["level"].no >= threshold:
            return True
        category = (record["extra"] or {}).get("category")
        return category in enabled and record["level"].no >= logger.level("DEBUG").no

    return _filter


def _serialize_log(message: "logger.Message", metadata: Dict[str, Any]) -> None:
    record = message.record
    payload = build_log_payload(record, metadata)

    span = trace.get_current_span()
    span_context = span.get_span_context() if span else None
    if span_context and span_context.is_valid:
        payload["trace_id"] = f"{span_context.trace_id:032x}"
        payload["span_id"] = f"{span_context.span_id:016x}"

    print(json.dumps(payload, default=str))


def configure_logging(
    *,
    service_name: str,
    environment: str,
    version: str,
    level: str = "INFO",
    debug_categories: Iterable[str] = (),
) -> None:
    """Configure Loguru + stdlib logging with structured JSON output."""

    logger.remove()
    metadata = {"service_name": service_name, "environment": environment, "version": version}
    logger.add(
        lambda message: _serialize_log(message, metadata),
        level=0,
        filter=category_filter(level, debug_categories),
        backtrace=False,
        diagnose=False,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


__all__ = ["CATEGORY_FIELDS", "InterceptHandler", "build_log_payload", "category_filter", "configure_logging"]
